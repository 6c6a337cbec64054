from __future__ import annotations

from datetime import datetime

from flask import current_app

from listingflow.services.errors import InvalidTransition, StorageFailure, WorkflowError
from listingflow.services.subjects import SYSTEM_ACTOR
from listingflow.services.transition_engine import apply, list_expirable
from listingflow.utils.job_runs import record_job_run

JOB_NAME = "workflow_expiry_sweeper"


def _now():
    return datetime.utcnow()


def run_expiry_sweep(*, limit: int | None = None, now: datetime | None = None) -> dict:
    """Expire ACTIVE instances whose window has ended.

    Every expiry goes through ``apply`` as the SYSTEM actor, so an instance a
    user stopped (or another sweep expired) in the meantime is skipped rather
    than double-processed.
    """
    started_at = _now()
    now = now or started_at
    if limit is None:
        limit = int(current_app.config.get("WORKFLOW_EXPIRY_BATCH_LIMIT", 200) or 200)
    limit = max(1, min(int(limit), 5000))

    processed = 0
    expired = 0
    skipped = 0
    errors = 0
    expired_ids: list[int] = []

    for instance_id in list_expirable(now=now, limit=limit):
        processed += 1
        try:
            apply(instance_id, "expire", SYSTEM_ACTOR, now=now)
            expired += 1
            expired_ids.append(int(instance_id))
        except InvalidTransition:
            skipped += 1
        except StorageFailure:
            errors += 1
        except WorkflowError as exc:
            errors += 1
            current_app.logger.warning(
                "workflow_expiry_failed instance_id=%s code=%s msg=%s",
                instance_id,
                exc.code,
                exc.message,
            )

    result = {
        "ok": errors == 0,
        "processed": processed,
        "expired": expired,
        "skipped": skipped,
        "errors": errors,
        "expired_ids": expired_ids,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name=JOB_NAME,
        ok=errors == 0,
        started_at=started_at,
        summary={k: v for k, v in result.items() if k != "expired_ids"},
        error=None if errors == 0 else f"errors={errors}",
    )
    current_app.logger.info(
        "workflow_expiry_sweep processed=%s expired=%s skipped=%s errors=%s",
        processed,
        expired,
        skipped,
        errors,
    )
    return result
