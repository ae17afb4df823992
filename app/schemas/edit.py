from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EditCreate(_CamelModel):
    original_image_url: str = Field(min_length=1)
    original_image_filename: str = Field(min_length=1)
    user_prompt: str = Field(min_length=1)


class EditSubmitted(_CamelModel):
    edit_id: UUID
    job_id: UUID
