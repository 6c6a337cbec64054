from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

EXPIRY_TASK_NAME = "listingflow.tasks.workflow_tasks.run_expiry_sweep"

_OBSERVERS_BOUND = False


def _first_env(*names: str, default: str = "") -> str:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return default


def _expiry_interval_seconds() -> float:
    raw = _first_env("WORKFLOW_EXPIRY_INTERVAL_SECONDS", default="3600")
    try:
        seconds = int(raw)
    except ValueError:
        seconds = 3600
    return float(max(60, seconds))


def _task_trace_id(kwargs) -> str:
    if not isinstance(kwargs, dict):
        return ""
    return str(kwargs.get("trace_id") or "").strip()


def _log_task_event(flask_app, level: str, event: str, **fields) -> None:
    payload = {"event": event, **fields, "timestamp": datetime.utcnow().isoformat()}
    getattr(flask_app.logger, level)(json.dumps(payload, default=str))


def _bind_task_observers(flask_app) -> None:
    global _OBSERVERS_BOUND
    if _OBSERVERS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, kwargs=None, einfo=None, **extra):
        _log_task_event(
            flask_app,
            "error",
            "celery_task_failure",
            task_name=getattr(sender, "name", "") or "",
            task_id=str(task_id or ""),
            trace_id=_task_trace_id(kwargs),
            exception=str(exception or ""),
            einfo=str(einfo) if einfo is not None else None,
        )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, **extra):
        _log_task_event(
            flask_app,
            "warning",
            "celery_task_retry",
            task_name=str(getattr(request, "task", "") or ""),
            task_id=str(getattr(request, "id", "") or ""),
            trace_id=_task_trace_id(getattr(request, "kwargs", None)),
            reason=str(reason or ""),
            retry_count=int(getattr(request, "retries", 0) or 0),
        )

    _OBSERVERS_BOUND = True


def celery_settings() -> dict:
    broker = _first_env("CELERY_BROKER_URL", "REDIS_URL", default="redis://localhost:6379/0")
    return {
        "broker_url": broker,
        "result_backend": _first_env("CELERY_RESULT_BACKEND", "REDIS_URL", default=broker),
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "task_track_started": True,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "broker_connection_retry_on_startup": True,
        "timezone": "UTC",
        "enable_utc": True,
        "beat_schedule": {
            "workflow-expiry-sweeper": {
                "task": EXPIRY_TASK_NAME,
                "schedule": _expiry_interval_seconds(),
            },
        },
    }


def create_celery_app(flask_app) -> Celery:
    celery = Celery(flask_app.import_name)
    celery.conf.update(celery_settings())

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["listingflow.tasks"], related_name="workflow_tasks")
    _bind_task_observers(flask_app)
    return celery
