from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from listingflow.extensions import db
from listingflow.models import PaymentAttachment, WorkflowInstance
from listingflow.services.errors import InvalidInput, PaymentNotVerified
from listingflow.services.state_registry import PaymentMethod, PaymentSubStatus

# These helpers only stage changes on the session. The transition engine owns
# the commit, so a payment row never changes without its instance changing.


def normalize_method(value: str | None) -> str:
    method = (value or "").strip().upper()
    if method not in PaymentMethod.ALL:
        raise InvalidInput("method must be TRANSFER or COD", details={"method": value})
    return method


def normalize_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInput("amount must be a number", details={"amount": value})
    if amount <= 0:
        raise InvalidInput("amount must be positive", details={"amount": value})
    return amount


def get_attachment(subject_kind: str, subject_id: str) -> PaymentAttachment | None:
    return PaymentAttachment.query.filter_by(
        subject_kind=subject_kind, subject_id=str(subject_id)
    ).first()


def attachment_for(instance: WorkflowInstance) -> PaymentAttachment | None:
    return get_attachment(instance.kind, instance.subject_id)


def attach_or_replace(
    subject_kind: str,
    subject_id: str,
    *,
    amount,
    method: str,
    instance: WorkflowInstance | None = None,
) -> PaymentAttachment:
    """Upsert the subject's payment row.

    A resubmission fully supersedes the previous cycle: amount, method, proof,
    sub-status and verification fields are all reset on the same row.
    """
    clean_amount = normalize_amount(amount)
    clean_method = normalize_method(method)
    row = get_attachment(subject_kind, subject_id)
    if row is None:
        row = PaymentAttachment(subject_kind=subject_kind, subject_id=str(subject_id))
    row.amount = clean_amount
    row.method = clean_method
    row.proof_reference = None
    row.sub_status = PaymentSubStatus.PENDING
    row.verified_by = None
    row.verified_at = None
    row.rejection_reason = None
    if instance is not None:
        row.instance_id = instance.id
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    return row


def upload_proof(row: PaymentAttachment | None, proof_reference: str | None) -> PaymentAttachment:
    if row is None:
        raise PaymentNotVerified("No payment is attached; request the workflow first")
    ref = (proof_reference or "").strip()
    if not ref:
        raise InvalidInput("proof_reference is required")
    row.proof_reference = ref[:1024]
    row.sub_status = PaymentSubStatus.PENDING
    row.rejection_reason = None
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    return row


def check_verifiable(row: PaymentAttachment | None) -> None:
    if row is None:
        raise PaymentNotVerified("No payment is attached; request the workflow first")
    if row.method == PaymentMethod.TRANSFER and not (row.proof_reference or "").strip():
        raise PaymentNotVerified("Upload proof of payment before it can be verified")


def verify(row: PaymentAttachment | None, *, actor_id: int | None, now: datetime | None = None) -> PaymentAttachment:
    check_verifiable(row)
    row.sub_status = PaymentSubStatus.VERIFIED
    row.verified_by = actor_id
    row.verified_at = now or datetime.utcnow()
    row.rejection_reason = None
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    return row


def reject(
    row: PaymentAttachment | None,
    *,
    actor_id: int | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> PaymentAttachment | None:
    # Rejecting an approval request may happen before any payment row exists.
    if row is None:
        return None
    row.sub_status = PaymentSubStatus.REJECTED
    row.verified_by = actor_id
    row.verified_at = now or datetime.utcnow()
    row.rejection_reason = (reason or "").strip()[:240] or None
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    return row


def is_verified(row: PaymentAttachment | None) -> bool:
    return bool(row is not None and (row.sub_status or "") == PaymentSubStatus.VERIFIED)
