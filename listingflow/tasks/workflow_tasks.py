from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from listingflow.celery_app import EXPIRY_TASK_NAME
from listingflow.jobs.expiry_sweeper import run_expiry_sweep as sweep_expired_windows

MAX_BACKOFF_SECONDS = 900


def _elapsed_ms(started: float) -> int:
    return int(max(0.0, time.perf_counter() - started) * 1000.0)


def _log_sweep(status: str, started: float, trace_id: str, **extra) -> None:
    payload = {
        "task_name": EXPIRY_TASK_NAME,
        "status": status,
        "duration_ms": _elapsed_ms(started),
        "trace_id": trace_id or "",
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra)
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # 5s, 10s, 20s, ... capped.
    return int(min(MAX_BACKOFF_SECONDS, 5 * (2 ** max(0, int(retries)))))


@shared_task(bind=True, name=EXPIRY_TASK_NAME, max_retries=3)
def run_expiry_sweep(self, *, limit: int | None = None, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = sweep_expired_windows(limit=limit)
    except SQLAlchemyError as exc:
        retries = int(self.request.retries or 0)
        if retries >= int(self.max_retries or 0):
            _log_sweep("failed", started, trace_id, detail=str(exc))
            raise
        countdown = _retry_countdown(retries)
        _log_sweep("retrying", started, trace_id, detail=str(exc), countdown=countdown)
        raise self.retry(exc=exc, countdown=countdown)

    _log_sweep(
        "ok" if result.get("ok") else "partial",
        started,
        trace_id,
        expired=result.get("expired"),
        skipped=result.get("skipped"),
        errors=result.get("errors"),
    )
    return result
