"""Celery app, beat schedule and background governance tasks."""

from celery import Celery

from governance_core.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "governance_core",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=300,
    task_time_limit=600,
)

celery_app.conf.beat_schedule = {
    "escalation-sweep": {
        "task": "governance.escalation_sweep",
        "schedule": settings.ESCALATION_SWEEP_INTERVAL_MINUTES * 60.0,
    },
    "purge-expired-exports": {
        "task": "governance.purge_expired_exports",
        "schedule": 3600.0,
    },
}

_services = None


def worker_services():
    """Service graph for this worker process, built on first use."""
    global _services
    if _services is None:
        from governance_core.db.session import build_engine, build_session_factory
        from governance_core.services.container import build_services

        session_factory = build_session_factory(build_engine(settings))
        _services = build_services(settings, session_factory)
    return _services


@celery_app.task(name="governance.escalation_sweep")
def escalation_sweep() -> dict:
    """Escalate or settle overdue approval requests."""
    report = worker_services().sweeper.run_once()
    return report.to_dict()


@celery_app.task(name="governance.purge_expired_exports")
def purge_expired_exports() -> int:
    services = worker_services()
    db = services.sweeper.session_factory()
    try:
        return services.exports.purge_expired(db)
    finally:
        db.close()


@celery_app.task(name="governance.deliver_notification")
def deliver_notification(event: str, payload: dict) -> bool:
    """Deliver one notification; retries and backoff happen inside."""
    return worker_services().notifications.deliver(event, payload)
