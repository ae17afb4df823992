from structlog.testing import capture_logs

from app.core.logging import get_logger


def test_events_carry_the_logger_name() -> None:
    with capture_logs() as logs:
        get_logger("editforge.worker").info("worker.batch_finished", processed=2)

    assert logs == [
        {
            "logger": "editforge.worker",
            "event": "worker.batch_finished",
            "processed": 2,
            "log_level": "info",
        }
    ]
