from datetime import datetime

from listingflow.extensions import db


class PaymentAttachment(db.Model):
    __tablename__ = "payment_attachments"
    __table_args__ = (
        db.UniqueConstraint("subject_kind", "subject_id", name="uq_payment_attachment_subject"),
    )

    id = db.Column(db.Integer, primary_key=True)
    subject_kind = db.Column(db.String(32), nullable=False)
    subject_id = db.Column(db.String(64), nullable=False, index=True)
    # Instance of the current cycle; rewritten when a new cycle reuses the row.
    instance_id = db.Column(db.Integer, nullable=True, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    method = db.Column(db.String(16), nullable=False, default="TRANSFER")
    proof_reference = db.Column(db.String(1024), nullable=True)
    sub_status = db.Column(db.String(16), nullable=False, default="PENDING")

    verified_by = db.Column(db.Integer, nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "subject_kind": self.subject_kind or "",
            "subject_id": self.subject_id or "",
            "instance_id": int(self.instance_id) if self.instance_id is not None else None,
            "amount": float(self.amount or 0),
            "method": self.method or "",
            "proof_reference": self.proof_reference,
            "sub_status": self.sub_status or "",
            "verified_by": int(self.verified_by) if self.verified_by is not None else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
