from __future__ import annotations

from flask import Blueprint, jsonify, request
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from listingflow.extensions import db
from listingflow.models import User, WorkflowInstance
from listingflow.services.errors import Forbidden, InvalidInput, NotFound, Unauthorized
from listingflow.services.state_registry import State, WorkflowKind, normalize_kind, transitions_for
from listingflow.services.subjects import actor_from_user, can_view
from listingflow.services.transition_engine import apply, describe, get_instance, open_workflow
from listingflow.utils.jwt_utils import decode_token, get_bearer_token

workflows_bp = Blueprint("workflows_bp", __name__, url_prefix="/api/workflows")

# Actions reachable through the generic "/<id>/<action>" route. Payment steps
# have their own routes; "expire" is only run by the sweeper.
_GENERIC_ACTIONS = (
    "approve",
    "reject",
    "stop",
    "confirm",
    "start",
    "complete",
    "cancel",
    "deactivate",
    "activate",
    "resubmit",
)

_PAYMENT_ACTIONS = {
    "upload-proof": "upload_proof",
    "verify": "verify",
    "reject": "reject_payment",
}


def _current_user() -> User:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        raise Unauthorized("Authentication required")
    payload = decode_token(token)
    if not payload:
        raise Unauthorized("Invalid or expired token")
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token subject")
    try:
        user = db.session.get(User, uid)
    except SQLAlchemyError:
        db.session.rollback()
        user = None
    if user is None:
        raise Unauthorized("Unknown user")
    return user


def _is_admin(u: User | None) -> bool:
    if not u:
        return False
    return (getattr(u, "role", None) or "").strip().lower() == "admin"


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput("JSON body must be an object")
    return data


def _idempotency_key() -> str | None:
    return (request.headers.get("Idempotency-Key") or "").strip() or None


def _reason(data: dict) -> str | None:
    reason = data.get("reason")
    if reason is None:
        return None
    return str(reason).strip() or None


def _parse_page_values():
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    try:
        offset = int(request.args.get("offset") or 0)
    except ValueError:
        offset = 0
    return max(1, min(limit, 200)), max(0, offset)


def _ok(instance: WorkflowInstance, status: int = 200):
    return jsonify({"ok": True, **describe(instance, include_history=False)}), status


@workflows_bp.post("/<kind>/<subject_id>/request")
def request_workflow(kind: str, subject_id: str):
    user = _current_user()
    workflow_kind = normalize_kind(kind)
    if workflow_kind is None:
        raise InvalidInput("Unknown workflow kind", details={"kind": kind})
    data = _body()
    instance = open_workflow(
        workflow_kind,
        subject_id,
        actor_from_user(user),
        method=data.get("method"),
        amount=data.get("amount"),
        days=data.get("days"),
        idempotency_key=_idempotency_key(),
    )
    return _ok(instance, 201)


@workflows_bp.post("/<int:instance_id>/<action>")
def run_action(instance_id: int, action: str):
    user = _current_user()
    act = (action or "").strip().lower()
    if act not in _GENERIC_ACTIONS:
        raise NotFound("Unknown workflow action", details={"action": action})
    data = _body()
    instance = apply(
        instance_id,
        act,
        actor_from_user(user),
        reason=_reason(data),
        idempotency_key=_idempotency_key(),
    )
    return _ok(instance)


@workflows_bp.post("/<int:instance_id>/payment/<step>")
def run_payment_step(instance_id: int, step: str):
    user = _current_user()
    act = _PAYMENT_ACTIONS.get((step or "").strip().lower())
    if act is None:
        raise NotFound("Unknown payment step", details={"step": step})
    data = _body()
    proof_reference = None
    if act == "upload_proof":
        proof_reference = str(data.get("proof_reference") or "").strip()
        if not proof_reference:
            raise InvalidInput("proof_reference is required")
    instance = apply(
        instance_id,
        act,
        actor_from_user(user),
        reason=_reason(data),
        proof_reference=proof_reference,
        idempotency_key=_idempotency_key(),
    )
    return _ok(instance)


@workflows_bp.get("/<int:instance_id>")
def get_workflow(instance_id: int):
    user = _current_user()
    instance = get_instance(instance_id)
    if not can_view(instance, actor_from_user(user)) and int(instance.owner_id) != int(user.id):
        raise Forbidden("Not allowed to view this workflow")
    return jsonify({"ok": True, **describe(instance)}), 200


@workflows_bp.get("")
def list_workflows():
    user = _current_user()
    query = WorkflowInstance.query

    raw_kind = (request.args.get("kind") or "").strip()
    kind = None
    if raw_kind:
        kind = normalize_kind(raw_kind)
        if kind is None:
            raise InvalidInput("Unknown workflow kind", details={"kind": raw_kind})
        query = query.filter(WorkflowInstance.kind == kind)

    raw_state = (request.args.get("state") or "").strip()
    if raw_state:
        if raw_state.lower() == "pending":
            query = query.filter(
                or_(
                    WorkflowInstance.state.in_(State.PENDING_GROUP),
                    and_(
                        WorkflowInstance.kind == WorkflowKind.LISTING_PUBLICATION,
                        WorkflowInstance.state == State.PUBLICATION_PENDING,
                    ),
                )
            )
        else:
            state = raw_state.upper()
            if kind is not None and state not in transitions_for(kind).states:
                raise InvalidInput("Unknown state for workflow kind", details={"kind": kind, "state": raw_state})
            query = query.filter(WorkflowInstance.state == state)

    subject_id = (request.args.get("subject_id") or "").strip()
    if subject_id:
        query = query.filter(WorkflowInstance.subject_id == subject_id)

    if not _is_admin(user):
        uid = int(user.id)
        query = query.filter(or_(WorkflowInstance.owner_id == uid, WorkflowInstance.counterparty_id == uid))

    limit, offset = _parse_page_values()
    total = query.count()
    rows = query.order_by(WorkflowInstance.updated_at.desc(), WorkflowInstance.id.desc()).offset(offset).limit(limit).all()
    return jsonify({
        "ok": True,
        "items": [row.to_dict() for row in rows],
        "total": int(total),
        "limit": limit,
        "offset": offset,
    }), 200
