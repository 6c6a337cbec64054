from __future__ import annotations

from dataclasses import dataclass, field


class WorkflowKind:
    LISTING_PROMOTION = "LISTING_PROMOTION"
    ADVERTISEMENT = "ADVERTISEMENT"
    TRANSACTION = "TRANSACTION"
    LISTING_PUBLICATION = "LISTING_PUBLICATION"

    ALL = (LISTING_PROMOTION, ADVERTISEMENT, TRANSACTION, LISTING_PUBLICATION)
    SLUGS = {
        "listing-promotion": LISTING_PROMOTION,
        "promotion": LISTING_PROMOTION,
        "advertisement": ADVERTISEMENT,
        "ad": ADVERTISEMENT,
        "transaction": TRANSACTION,
        "listing-publication": LISTING_PUBLICATION,
        "publication": LISTING_PUBLICATION,
    }


class Role:
    PROVIDER = "PROVIDER"
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class PaymentMethod:
    TRANSFER = "TRANSFER"
    COD = "COD"

    ALL = (TRANSFER, COD)


class PaymentSubStatus:
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class PaymentEffect:
    ATTACH = "attach"
    UPLOAD_PROOF = "upload_proof"
    VERIFY = "verify"
    REJECT = "reject"


class State:
    NONE = "NONE"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    WAITING_PAYMENT = "WAITING_PAYMENT"
    PAYMENT_UPLOADED = "PAYMENT_UPLOADED"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    STOPPED = "STOPPED"
    EXPIRED = "EXPIRED"

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    INACTIVE = "INACTIVE"

    # Admin review queue ("?state=pending" on the listing endpoint).
    PENDING_GROUP = (PENDING_APPROVAL, WAITING_PAYMENT, PAYMENT_UPLOADED)
    # Listings waiting for moderation join the same queue.
    PUBLICATION_PENDING = PENDING


@dataclass(frozen=True)
class Transition:
    from_state: str
    action: str
    roles: frozenset
    # Either a single state or a {payment_method: state} branch.
    to_state: str | dict
    methods: frozenset | None = None
    # Either a single effect or a {payment_method: effect} branch.
    payment_effect: str | dict | None = None

    def applies_to(self, method: str | None) -> bool:
        if self.methods is None:
            return True
        return method in self.methods

    def target(self, method: str | None) -> str | None:
        if isinstance(self.to_state, dict):
            return self.to_state.get(method)
        return self.to_state

    def effect(self, method: str | None) -> str | None:
        if isinstance(self.payment_effect, dict):
            return self.payment_effect.get(method)
        return self.payment_effect


@dataclass(frozen=True)
class WorkflowTable:
    kind: str
    states: frozenset
    initial_state: str
    terminal_states: frozenset
    transitions: tuple
    active_state: str | None = None
    requires_payment: bool = False
    rejected_states: frozenset = field(default_factory=frozenset)

    def find(self, state: str, action: str, method: str | None) -> Transition | None:
        for row in self.transitions:
            if row.from_state == state and row.action == action and row.applies_to(method):
                return row
        return None

    def actions_from(self, state: str, method: str | None = None) -> list[str]:
        return sorted({row.action for row in self.transitions if row.from_state == state and row.applies_to(method)})


_PROVIDER = frozenset({Role.PROVIDER})
_ADMIN = frozenset({Role.ADMIN})
_SYSTEM = frozenset({Role.SYSTEM})
_PROVIDER_OR_ADMIN = frozenset({Role.PROVIDER, Role.ADMIN})
_ANY_PARTY = frozenset({Role.CUSTOMER, Role.PROVIDER, Role.ADMIN})
_TRANSFER_ONLY = frozenset({PaymentMethod.TRANSFER})
_COD_ONLY = frozenset({PaymentMethod.COD})


LISTING_PROMOTION_TABLE = WorkflowTable(
    kind=WorkflowKind.LISTING_PROMOTION,
    states=frozenset({
        State.NONE,
        State.PENDING_APPROVAL,
        State.WAITING_PAYMENT,
        State.PAYMENT_UPLOADED,
        State.ACTIVE,
        State.REJECTED,
        State.STOPPED,
        State.EXPIRED,
    }),
    initial_state=State.NONE,
    terminal_states=frozenset({State.REJECTED, State.STOPPED, State.EXPIRED}),
    active_state=State.ACTIVE,
    requires_payment=True,
    rejected_states=frozenset({State.REJECTED}),
    transitions=(
        Transition(State.NONE, "request", _PROVIDER, State.PENDING_APPROVAL, payment_effect=PaymentEffect.ATTACH),
        # COD is collected in person, so approval doubles as payment verification.
        Transition(
            State.PENDING_APPROVAL,
            "approve",
            _ADMIN,
            {PaymentMethod.COD: State.ACTIVE, PaymentMethod.TRANSFER: State.WAITING_PAYMENT},
            payment_effect={PaymentMethod.COD: PaymentEffect.VERIFY},
        ),
        Transition(State.PENDING_APPROVAL, "reject", _ADMIN, State.REJECTED, payment_effect=PaymentEffect.REJECT),
        Transition(
            State.WAITING_PAYMENT,
            "upload_proof",
            _PROVIDER,
            State.PAYMENT_UPLOADED,
            methods=_TRANSFER_ONLY,
            payment_effect=PaymentEffect.UPLOAD_PROOF,
        ),
        Transition(
            State.PAYMENT_UPLOADED,
            "upload_proof",
            _PROVIDER,
            State.PAYMENT_UPLOADED,
            methods=_TRANSFER_ONLY,
            payment_effect=PaymentEffect.UPLOAD_PROOF,
        ),
        Transition(State.PAYMENT_UPLOADED, "verify", _ADMIN, State.ACTIVE, payment_effect=PaymentEffect.VERIFY),
        Transition(State.PAYMENT_UPLOADED, "reject", _ADMIN, State.REJECTED, payment_effect=PaymentEffect.REJECT),
        Transition(State.PAYMENT_UPLOADED, "reject_payment", _ADMIN, State.REJECTED, payment_effect=PaymentEffect.REJECT),
        Transition(State.ACTIVE, "stop", _PROVIDER_OR_ADMIN, State.STOPPED),
        Transition(State.ACTIVE, "expire", _SYSTEM, State.EXPIRED),
    ),
)


ADVERTISEMENT_TABLE = WorkflowTable(
    kind=WorkflowKind.ADVERTISEMENT,
    states=frozenset({
        State.NONE,
        State.PENDING_APPROVAL,
        State.WAITING_PAYMENT,
        State.PAYMENT_UPLOADED,
        State.ACTIVE,
        State.REJECTED,
        State.EXPIRED,
    }),
    initial_state=State.NONE,
    terminal_states=frozenset({State.REJECTED, State.EXPIRED}),
    active_state=State.ACTIVE,
    requires_payment=True,
    rejected_states=frozenset({State.REJECTED}),
    transitions=(
        Transition(State.NONE, "request", _PROVIDER, State.PENDING_APPROVAL, payment_effect=PaymentEffect.ATTACH),
        Transition(State.PENDING_APPROVAL, "approve", _ADMIN, State.WAITING_PAYMENT),
        Transition(State.PENDING_APPROVAL, "reject", _ADMIN, State.REJECTED, payment_effect=PaymentEffect.REJECT),
        Transition(
            State.WAITING_PAYMENT,
            "upload_proof",
            _PROVIDER,
            State.PAYMENT_UPLOADED,
            methods=_TRANSFER_ONLY,
            payment_effect=PaymentEffect.UPLOAD_PROOF,
        ),
        Transition(
            State.WAITING_PAYMENT,
            "verify",
            _ADMIN,
            State.ACTIVE,
            methods=_COD_ONLY,
            payment_effect=PaymentEffect.VERIFY,
        ),
        Transition(
            State.PAYMENT_UPLOADED,
            "upload_proof",
            _PROVIDER,
            State.PAYMENT_UPLOADED,
            methods=_TRANSFER_ONLY,
            payment_effect=PaymentEffect.UPLOAD_PROOF,
        ),
        Transition(State.PAYMENT_UPLOADED, "verify", _ADMIN, State.ACTIVE, payment_effect=PaymentEffect.VERIFY),
        Transition(
            State.PAYMENT_UPLOADED,
            "reject_payment",
            _ADMIN,
            State.WAITING_PAYMENT,
            payment_effect=PaymentEffect.REJECT,
        ),
        Transition(State.ACTIVE, "expire", _SYSTEM, State.EXPIRED),
    ),
)


TRANSACTION_TABLE = WorkflowTable(
    kind=WorkflowKind.TRANSACTION,
    states=frozenset({
        State.NONE,
        State.PENDING,
        State.CONFIRMED,
        State.IN_PROGRESS,
        State.COMPLETED,
        State.CANCELLED,
    }),
    initial_state=State.NONE,
    terminal_states=frozenset({State.COMPLETED, State.CANCELLED}),
    transitions=(
        Transition(State.NONE, "request", frozenset({Role.CUSTOMER}), State.PENDING),
        Transition(State.PENDING, "confirm", _PROVIDER_OR_ADMIN, State.CONFIRMED),
        Transition(State.PENDING, "cancel", _ANY_PARTY, State.CANCELLED),
        Transition(State.CONFIRMED, "start", _PROVIDER_OR_ADMIN, State.IN_PROGRESS),
        Transition(State.CONFIRMED, "cancel", _ANY_PARTY, State.CANCELLED),
        Transition(State.IN_PROGRESS, "complete", _PROVIDER_OR_ADMIN, State.COMPLETED),
        Transition(State.IN_PROGRESS, "cancel", _ANY_PARTY, State.CANCELLED),
    ),
)


LISTING_PUBLICATION_TABLE = WorkflowTable(
    kind=WorkflowKind.LISTING_PUBLICATION,
    states=frozenset({
        State.NONE,
        State.PENDING,
        State.ACTIVE,
        State.INACTIVE,
        State.REJECTED,
    }),
    initial_state=State.NONE,
    # Moderation never ends; a rejected or deactivated listing can be resubmitted.
    terminal_states=frozenset(),
    rejected_states=frozenset({State.REJECTED}),
    transitions=(
        Transition(State.NONE, "request", _PROVIDER, State.PENDING),
        Transition(State.PENDING, "approve", _ADMIN, State.ACTIVE),
        Transition(State.PENDING, "reject", _ADMIN, State.REJECTED),
        Transition(State.ACTIVE, "reject", _ADMIN, State.REJECTED),
        Transition(State.ACTIVE, "deactivate", _PROVIDER_OR_ADMIN, State.INACTIVE),
        Transition(State.INACTIVE, "activate", _ADMIN, State.ACTIVE),
        Transition(State.INACTIVE, "resubmit", _PROVIDER, State.PENDING),
        Transition(State.REJECTED, "resubmit", _PROVIDER, State.PENDING),
    ),
)


_TABLES = {
    WorkflowKind.LISTING_PROMOTION: LISTING_PROMOTION_TABLE,
    WorkflowKind.ADVERTISEMENT: ADVERTISEMENT_TABLE,
    WorkflowKind.TRANSACTION: TRANSACTION_TABLE,
    WorkflowKind.LISTING_PUBLICATION: LISTING_PUBLICATION_TABLE,
}


def normalize_kind(value: str | None) -> str | None:
    raw = (value or "").strip()
    if not raw:
        return None
    upper = raw.upper().replace("-", "_")
    if upper in WorkflowKind.ALL:
        return upper
    return WorkflowKind.SLUGS.get(raw.lower())


def transitions_for(kind: str) -> WorkflowTable:
    table = _TABLES.get(kind)
    if table is None:
        raise KeyError(f"unknown_workflow_kind {kind}")
    return table


def lookup(kind: str, state: str, action: str, method: str | None = None) -> Transition | None:
    return transitions_for(kind).find(state, action, method)


def initial_state(kind: str) -> str:
    return transitions_for(kind).initial_state


def active_state(kind: str) -> str | None:
    return transitions_for(kind).active_state


def is_terminal(kind: str, state: str) -> bool:
    return state in transitions_for(kind).terminal_states


def requires_verified_payment(kind: str, to_state: str) -> bool:
    table = transitions_for(kind)
    return bool(table.requires_payment and table.active_state and to_state == table.active_state)


def windowed_kinds() -> list[str]:
    return [kind for kind, table in _TABLES.items() if table.active_state]
