from datetime import datetime

from listingflow.extensions import db


class WorkflowTransition(db.Model):
    """Append-only audit row; one per accepted transition."""

    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "idempotency_key", name="uq_workflow_transition_instance_key"),
        db.Index("ix_workflow_transitions_instance_created", "instance_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, nullable=False, index=True)
    from_state = db.Column(db.String(32), nullable=False, default="")
    to_state = db.Column(db.String(32), nullable=False)
    action = db.Column(db.String(32), nullable=False)
    actor_role = db.Column(db.String(32), nullable=False, default="SYSTEM")
    actor_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "instance_id": int(self.instance_id),
            "from_state": self.from_state or "",
            "to_state": self.to_state or "",
            "action": self.action or "",
            "actor_role": self.actor_role or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "idempotency_key": self.idempotency_key or "",
            "reason": self.reason or "",
            "metadata_json": self.metadata_json or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
