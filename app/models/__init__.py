from app.models.edit import Edit, EditStatus
from app.models.job import Job, JobStage

__all__ = ["Edit", "EditStatus", "Job", "JobStage"]
