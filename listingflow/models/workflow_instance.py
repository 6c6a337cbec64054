from datetime import datetime

from listingflow.extensions import db


class WorkflowInstance(db.Model):
    __tablename__ = "workflow_instances"
    __table_args__ = (
        db.Index("ix_workflow_instances_kind_subject", "kind", "subject_id"),
        db.Index("ix_workflow_instances_state_active_until", "state", "active_until"),
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False, index=True)
    subject_id = db.Column(db.String(64), nullable=False)

    # Provider for promotions/ads, customer for transactions.
    owner_id = db.Column(db.Integer, nullable=False, index=True)
    # Provider side of a transaction.
    counterparty_id = db.Column(db.Integer, nullable=True, index=True)

    state = db.Column(db.String(32), nullable=False)
    payment_method = db.Column(db.String(16), nullable=True)
    duration_days = db.Column(db.Integer, nullable=True)

    active_from = db.Column(db.DateTime, nullable=True)
    active_until = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def active_window(self) -> dict | None:
        if self.active_from is None or self.active_until is None:
            return None
        return {
            "start": self.active_from.isoformat(),
            "end": self.active_until.isoformat(),
        }

    def to_dict(self):
        return {
            "id": int(self.id),
            "kind": self.kind or "",
            "subject_id": self.subject_id or "",
            "owner_id": int(self.owner_id),
            "counterparty_id": int(self.counterparty_id) if self.counterparty_id is not None else None,
            "state": self.state or "",
            "payment_method": self.payment_method,
            "duration_days": int(self.duration_days) if self.duration_days is not None else None,
            "active_window": self.active_window,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
