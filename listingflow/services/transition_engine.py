from __future__ import annotations

import json
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from listingflow.extensions import db
from listingflow.models import PaymentAttachment, WorkflowInstance, WorkflowTransition
from listingflow.services import payment_attachment_service as payments
from listingflow.services.errors import (
    Forbidden,
    IdempotencyConflict,
    InvalidInput,
    InvalidTransition,
    NotFound,
    PaymentNotVerified,
    StorageFailure,
    WorkflowError,
)
from listingflow.services.state_registry import (
    PaymentEffect,
    WorkflowKind,
    active_state,
    is_terminal,
    requires_verified_payment,
    transitions_for,
    windowed_kinds,
)
from listingflow.services.subjects import (
    parse_actor,
    party_roles,
    primary_role,
    resolve_subject,
    sync_subject_status,
)

_LOCKS_GUARD = threading.Lock()
# Entries drop out once no caller holds the lock.
_SUBJECT_LOCKS: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()


def _subject_lock(kind: str, subject_id: str) -> threading.RLock:
    key = f"{kind}:{subject_id}"
    with _LOCKS_GUARD:
        lock = _SUBJECT_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _SUBJECT_LOCKS[key] = lock
        return lock


@contextmanager
def _atomic(label: str):
    """One database transaction; validation errors and storage errors both roll back."""
    try:
        yield
        db.session.commit()
    except WorkflowError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("workflow_storage_failure op=%s err=%s", label, exc)
        raise StorageFailure("Could not persist workflow change; it is safe to retry") from exc


@contextmanager
def _read(label: str):
    """Reads outside a write transaction; storage errors surface as StorageFailure."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("workflow_storage_failure op=%s err=%s", label, exc)
        raise StorageFailure("Could not load workflow; it is safe to retry") from exc


def _now() -> datetime:
    return datetime.utcnow()


def _config_int(name: str, default: int) -> int:
    try:
        return int(current_app.config.get(name, default) or default)
    except (TypeError, ValueError):
        return int(default)


def default_active_days() -> int:
    return max(1, _config_int("WORKFLOW_DEFAULT_ACTIVE_DAYS", 7))


def promotion_price_per_day() -> int:
    return max(0, _config_int("PROMOTION_PRICE_PER_DAY", 1000))


def _clean_days(days) -> int:
    if days is None or days == "":
        return default_active_days()
    try:
        value = int(days)
    except (TypeError, ValueError):
        raise InvalidInput("days must be a whole number", details={"days": days})
    if value < 1 or value > 365:
        raise InvalidInput("days must be between 1 and 365", details={"days": days})
    return value


def _instance_pk(instance_id) -> int:
    try:
        return int(instance_id)
    except (TypeError, ValueError):
        raise InvalidInput("instance id must be an integer", details={"instance_id": instance_id})


def _load_locked(instance_id: int) -> WorkflowInstance | None:
    return (
        WorkflowInstance.query.filter_by(id=int(instance_id))
        .populate_existing()
        .with_for_update()
        .first()
    )


def _latest_locked(kind: str, subject_id: str) -> WorkflowInstance | None:
    return (
        WorkflowInstance.query.filter_by(kind=kind, subject_id=str(subject_id))
        .order_by(WorkflowInstance.id.desc())
        .populate_existing()
        .with_for_update()
        .first()
    )


def _attachment_locked(instance: WorkflowInstance) -> PaymentAttachment | None:
    return (
        PaymentAttachment.query.filter_by(subject_kind=instance.kind, subject_id=instance.subject_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def _find_replay(instance: WorkflowInstance, key: str | None) -> WorkflowTransition | None:
    if not key or instance.id is None:
        return None
    return WorkflowTransition.query.filter_by(instance_id=int(instance.id), idempotency_key=key).first()


def _check_replay(instance: WorkflowInstance, replay: WorkflowTransition, action: str, actor) -> None:
    """A reused key only replays the same action by the same actor."""
    roles = party_roles(instance, actor)
    if replay.actor_role not in roles:
        raise Forbidden(
            "Idempotency key belongs to another actor",
            details={"idempotency_key": replay.idempotency_key},
        )
    actor_id = parse_actor(actor)[1]
    recorded_id = int(replay.actor_id) if replay.actor_id is not None else None
    if replay.action != action or recorded_id != actor_id:
        raise IdempotencyConflict(
            "Idempotency key was already used for a different request",
            details={
                "idempotency_key": replay.idempotency_key,
                "recorded_action": replay.action,
                "action": action,
            },
        )


def _transition(
    instance: WorkflowInstance,
    action: str,
    actor,
    *,
    reason: str | None = None,
    proof_reference: str | None = None,
    payment: dict | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> WorkflowTransition:
    """Validate and stage one transition. Caller holds the subject lock and commits."""
    now = now or _now()
    key = (idempotency_key or "").strip()[:160] or None
    replay = _find_replay(instance, key)
    if replay is not None:
        _check_replay(instance, replay, action, actor)
        current_app.logger.info(
            "workflow_transition_replayed instance_id=%s action=%s key=%s",
            instance.id,
            action,
            key,
        )
        return replay

    table = transitions_for(instance.kind)
    method = instance.payment_method
    from_state = instance.state
    row = table.find(from_state, action, method)
    target = row.target(method) if row is not None else None
    if row is None or target is None:
        raise InvalidTransition(
            f"Cannot {action} a {instance.kind} workflow in state {from_state}",
            details={
                "state": from_state,
                "action": action,
                "allowed_actions": table.actions_from(from_state, method),
            },
        )

    roles = party_roles(instance, actor)
    if not roles & row.roles:
        raise Forbidden(
            f"Action {action} requires one of: {', '.join(sorted(row.roles))}",
            details={"action": action, "required_roles": sorted(row.roles)},
        )

    if action == "expire":
        if instance.active_until is None or instance.active_until > now:
            raise InvalidTransition(
                "Active window has not elapsed yet",
                details={"state": from_state, "action": action},
            )

    effect = row.effect(method)
    attachment = _attachment_locked(instance) if table.requires_payment else None
    if effect == PaymentEffect.UPLOAD_PROOF:
        if attachment is None:
            raise PaymentNotVerified("No payment is attached; request the workflow first")
        if not (proof_reference or "").strip():
            raise InvalidInput("proof_reference is required")
    elif effect == PaymentEffect.VERIFY:
        payments.check_verifiable(attachment)
    elif effect == PaymentEffect.ATTACH and not payment:
        raise InvalidInput("payment details are required")

    if requires_verified_payment(instance.kind, target):
        will_be_verified = effect == PaymentEffect.VERIFY or payments.is_verified(attachment)
        if not will_be_verified:
            raise PaymentNotVerified(
                "Payment must be uploaded and verified before the workflow can become active",
                details={"state": from_state, "action": action},
            )

    actor_role, actor_id = primary_role(roles), parse_actor(actor)[1]

    if effect == PaymentEffect.ATTACH:
        attachment = payments.attach_or_replace(
            instance.kind,
            instance.subject_id,
            amount=payment["amount"],
            method=payment["method"],
            instance=instance,
        )
    elif effect == PaymentEffect.UPLOAD_PROOF:
        payments.upload_proof(attachment, proof_reference)
    elif effect == PaymentEffect.VERIFY:
        payments.verify(attachment, actor_id=actor_id, now=now)
    elif effect == PaymentEffect.REJECT:
        payments.reject(attachment, actor_id=actor_id, reason=reason, now=now)

    previous_window = instance.active_window
    instance.state = target
    if table.active_state and target == table.active_state:
        if from_state != target:
            days = int(instance.duration_days or default_active_days())
            instance.active_from = now
            instance.active_until = now + timedelta(days=days)
    else:
        instance.active_from = None
        instance.active_until = None
    if target in table.rejected_states:
        instance.rejection_reason = (reason or "").strip()[:240] or None
    else:
        instance.rejection_reason = None
    instance.updated_at = now
    sync_subject_status(instance)

    metadata = {
        "payment_method": method,
        "payment_sub_status": attachment.sub_status if attachment is not None else None,
        "active_window": instance.active_window,
    }
    if previous_window and instance.active_window is None:
        metadata["closed_window"] = previous_window
    record = WorkflowTransition(
        instance_id=int(instance.id),
        from_state=from_state,
        to_state=target,
        action=action,
        actor_role=actor_role[:32],
        actor_id=actor_id,
        idempotency_key=key,
        reason=(reason or "")[:240] or None,
        metadata_json=json.dumps(metadata)[:4000],
        created_at=now,
    )
    db.session.add(instance)
    db.session.add(record)
    current_app.logger.info(
        "workflow_transition instance_id=%s kind=%s action=%s from=%s to=%s actor_role=%s actor_id=%s",
        instance.id,
        instance.kind,
        action,
        from_state,
        target,
        actor_role,
        actor_id,
    )
    return record


def apply(
    instance_id,
    action: str,
    actor,
    *,
    reason: str | None = None,
    proof_reference: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> WorkflowInstance:
    """Run ``action`` on an existing instance as ``actor``.

    Raises InvalidTransition, Forbidden, PaymentNotVerified, NotFound or
    StorageFailure; on any of them nothing is persisted.
    """
    act = (action or "").strip().lower()
    if not act:
        raise InvalidInput("action is required")
    pk = _instance_pk(instance_id)
    current = get_instance(pk)
    lock = _subject_lock(current.kind, current.subject_id)
    with lock:
        with _atomic(f"apply:{act}"):
            instance = _load_locked(pk)
            if instance is None:
                raise NotFound("Workflow not found", details={"instance_id": pk})
            _transition(
                instance,
                act,
                actor,
                reason=reason,
                proof_reference=proof_reference,
                idempotency_key=idempotency_key,
                now=now,
            )
    return instance


def open_workflow(
    kind: str,
    subject_id,
    actor,
    *,
    method: str | None = None,
    amount=None,
    days=None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> WorkflowInstance:
    """Start a cycle for a subject by running ``request``.

    A subject whose latest instance is terminal gets a fresh instance; the
    subject's payment row is reused and overwritten.
    """
    try:
        table = transitions_for(kind)
    except KeyError:
        raise InvalidInput("Unknown workflow kind", details={"kind": kind})
    sid = str(subject_id).strip()
    with _read(f"open:{kind}"):
        subject = resolve_subject(kind, sid)

    clean_method = None
    clean_days = None
    payment = None
    if table.requires_payment:
        clean_method = payments.normalize_method(method)
        clean_days = _clean_days(days)
        if (amount is None or amount == "") and kind == WorkflowKind.LISTING_PROMOTION:
            amount = clean_days * promotion_price_per_day()
        if amount is None or amount == "":
            raise InvalidInput("amount is required")
        payment = {"amount": payments.normalize_amount(amount), "method": clean_method}
    elif method:
        clean_method = payments.normalize_method(method)

    lock = _subject_lock(kind, sid)
    with lock:
        with _atomic(f"open:{kind}"):
            instance = _latest_locked(kind, sid)
            key = (idempotency_key or "").strip()[:160] or None
            replay = _find_replay(instance, key) if instance is not None else None
            if replay is not None:
                _check_replay(instance, replay, "request", actor)
                return instance
            if instance is None or is_terminal(kind, instance.state):
                instance = WorkflowInstance(
                    kind=kind,
                    subject_id=sid,
                    owner_id=int(subject["owner_id"]),
                    counterparty_id=subject.get("counterparty_id"),
                    state=table.initial_state,
                    created_at=now or _now(),
                )
                db.session.add(instance)
            if instance.state == table.initial_state:
                instance.payment_method = clean_method
                instance.duration_days = clean_days
            db.session.flush()
            _transition(
                instance,
                "request",
                actor,
                payment=payment,
                idempotency_key=key,
                now=now,
            )
    return instance


def get_instance(instance_id) -> WorkflowInstance:
    pk = _instance_pk(instance_id)
    with _read("get"):
        instance = db.session.get(WorkflowInstance, pk)
    if instance is None:
        raise NotFound("Workflow not found", details={"instance_id": pk})
    return instance


def history(instance: WorkflowInstance) -> list[WorkflowTransition]:
    return (
        WorkflowTransition.query.filter_by(instance_id=int(instance.id))
        .order_by(WorkflowTransition.created_at.asc(), WorkflowTransition.id.asc())
        .all()
    )


def payment_for(instance: WorkflowInstance):
    row = payments.attachment_for(instance)
    # Older cycles hand the shared row over to the newest instance.
    if row is None or (row.instance_id is not None and int(row.instance_id) != int(instance.id)):
        return None
    return row


def describe(instance: WorkflowInstance, *, include_history: bool = True) -> dict:
    table = transitions_for(instance.kind)
    workflow = instance.to_dict()
    workflow["terminal"] = is_terminal(instance.kind, instance.state)
    workflow["available_actions"] = table.actions_from(instance.state, instance.payment_method)
    payment = payment_for(instance)
    body = {
        "workflow": workflow,
        "payment": payment.to_dict() if payment is not None else None,
    }
    rows = history(instance)
    if include_history:
        body["history"] = [r.to_dict() for r in rows]
    body["transition"] = rows[-1].to_dict() if rows else None
    return body


def list_expirable(*, now: datetime | None = None, limit: int = 200) -> list[int]:
    now = now or _now()
    ids: list[int] = []
    for kind in windowed_kinds():
        rows = (
            WorkflowInstance.query.with_entities(WorkflowInstance.id)
            .filter(
                WorkflowInstance.kind == kind,
                WorkflowInstance.state == active_state(kind),
                WorkflowInstance.active_until.isnot(None),
                WorkflowInstance.active_until <= now,
            )
            .order_by(WorkflowInstance.active_until.asc(), WorkflowInstance.id.asc())
            .limit(int(limit))
            .all()
        )
        ids.extend(int(r[0]) for r in rows)
    return ids[: int(limit)]
