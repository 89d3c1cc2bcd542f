import logging

from celery import Celery

from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()
logger = logging.getLogger("app.tasks")

celery_app = Celery("sales_workflow", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "automation-scheduled-tick": {
        "task": "app.tasks.automation_scheduled_tick",
        "schedule": float(settings.scheduled_rules_interval_seconds),
    }
}


@celery_app.task(name="app.tasks.automation_scheduled_tick")
def automation_scheduled_tick() -> dict[str, int]:
    from app.automation.service import automation_service

    session = SessionLocal()
    try:
        summary = automation_service.run_scheduled(session)
    except Exception:
        session.rollback()
        logger.exception("automation.scheduled_tick_failed")
        raise
    finally:
        session.close()
    return summary
