from __future__ import annotations

from listingflow.extensions import db
from listingflow.models import Advertisement, Listing, Transaction, User, WorkflowInstance
from listingflow.services.errors import NotFound
from listingflow.services.state_registry import Role, WorkflowKind

SYSTEM_ACTOR = {"id": None, "role": "system"}


def actor_from_user(user: User | None) -> dict | None:
    if user is None:
        return None
    return {
        "id": int(user.id),
        "role": (getattr(user, "role", None) or "user").strip().lower(),
    }


def parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        role = str(actor.get("role") or actor.get("type") or "anonymous").strip().lower()
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return role, actor_id
    return "anonymous", None


def party_roles(instance: WorkflowInstance, actor) -> set[str]:
    """Roles the actor holds on this particular instance."""
    base_role, actor_id = parse_actor(actor)
    roles: set[str] = set()
    if base_role == "system":
        roles.add(Role.SYSTEM)
        return roles
    if base_role == "admin":
        roles.add(Role.ADMIN)
    if actor_id is None:
        return roles
    if instance.kind == WorkflowKind.TRANSACTION:
        if int(instance.owner_id) == actor_id:
            roles.add(Role.CUSTOMER)
        if instance.counterparty_id is not None and int(instance.counterparty_id) == actor_id:
            roles.add(Role.PROVIDER)
    elif base_role == "provider" and int(instance.owner_id) == actor_id:
        roles.add(Role.PROVIDER)
    return roles


def primary_role(roles: set[str]) -> str:
    for role in (Role.SYSTEM, Role.ADMIN, Role.PROVIDER, Role.CUSTOMER):
        if role in roles:
            return role
    return "NONE"


def can_view(instance: WorkflowInstance, actor) -> bool:
    return bool(party_roles(instance, actor))


def _subject_pk(subject_id: str) -> int:
    try:
        return int(str(subject_id).strip())
    except (TypeError, ValueError):
        raise NotFound("Subject not found", details={"subject_id": subject_id})


def resolve_subject(kind: str, subject_id: str) -> dict:
    """Owner lookup for the row a workflow is attached to."""
    pk = _subject_pk(subject_id)
    if kind in (WorkflowKind.LISTING_PROMOTION, WorkflowKind.LISTING_PUBLICATION):
        listing = db.session.get(Listing, pk)
        if listing is None:
            raise NotFound("Listing not found", details={"subject_id": subject_id})
        return {"owner_id": int(listing.user_id), "counterparty_id": None}
    if kind == WorkflowKind.ADVERTISEMENT:
        ad = db.session.get(Advertisement, pk)
        if ad is None:
            raise NotFound("Advertisement not found", details={"subject_id": subject_id})
        return {"owner_id": int(ad.provider_id), "counterparty_id": None}
    if kind == WorkflowKind.TRANSACTION:
        txn = db.session.get(Transaction, pk)
        if txn is None:
            raise NotFound("Transaction not found", details={"subject_id": subject_id})
        return {"owner_id": int(txn.customer_id), "counterparty_id": int(txn.provider_id)}
    raise NotFound("Unknown workflow kind", details={"kind": kind})


def sync_subject_status(instance: WorkflowInstance) -> None:
    """Mirror the publication state onto the listing row it moderates."""
    if instance.kind != WorkflowKind.LISTING_PUBLICATION:
        return
    listing = db.session.get(Listing, _subject_pk(instance.subject_id))
    if listing is None:
        raise NotFound("Listing not found", details={"subject_id": instance.subject_id})
    listing.status = instance.state
    db.session.add(listing)
