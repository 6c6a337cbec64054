from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from listingflow.extensions import db
from listingflow.models import JobRun


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    summary: dict | None = None,
    error: str | None = None,
) -> JobRun | None:
    """Persist one run of a periodic job. Bookkeeping failures never fail the job."""
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    row = JobRun(
        job_name=(job_name or "unknown").strip()[:64],
        ran_at=datetime.utcnow(),
        ok=bool(ok),
        duration_ms=duration_ms,
        summary_json=json.dumps(summary or {}, default=str),
        error=(error or "")[:1000] or None,
    )
    try:
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("job_run_record_failed job=%s err=%s", job_name, exc)
        return None


def last_run(job_name: str) -> JobRun | None:
    return (
        JobRun.query.filter_by(job_name=job_name)
        .order_by(JobRun.ran_at.desc(), JobRun.id.desc())
        .first()
    )
