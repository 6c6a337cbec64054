from __future__ import annotations

import unittest

from listingflow.services.state_registry import (
    PaymentEffect,
    PaymentMethod,
    Role,
    State,
    WorkflowKind,
    active_state,
    initial_state,
    is_terminal,
    lookup,
    normalize_kind,
    requires_verified_payment,
    transitions_for,
    windowed_kinds,
)


class StateRegistryTestCase(unittest.TestCase):
    def test_every_transition_uses_declared_states(self):
        for kind in WorkflowKind.ALL:
            table = transitions_for(kind)
            self.assertIn(table.initial_state, table.states)
            self.assertTrue(table.terminal_states.issubset(table.states))
            for row in table.transitions:
                self.assertIn(row.from_state, table.states, msg=f"{kind} {row.action}")
                targets = row.to_state.values() if isinstance(row.to_state, dict) else [row.to_state]
                for target in targets:
                    self.assertIn(target, table.states, msg=f"{kind} {row.action}")

    def test_terminal_states_have_no_outgoing_transitions(self):
        for kind in WorkflowKind.ALL:
            table = transitions_for(kind)
            for state in table.terminal_states:
                self.assertEqual(table.actions_from(state), [], msg=f"{kind} {state}")

    def test_promotion_approve_branches_on_payment_method(self):
        row = lookup(WorkflowKind.LISTING_PROMOTION, State.PENDING_APPROVAL, "approve", PaymentMethod.COD)
        self.assertIsNotNone(row)
        self.assertEqual(row.target(PaymentMethod.COD), State.ACTIVE)
        self.assertEqual(row.effect(PaymentMethod.COD), PaymentEffect.VERIFY)
        self.assertEqual(row.target(PaymentMethod.TRANSFER), State.WAITING_PAYMENT)
        self.assertIsNone(row.effect(PaymentMethod.TRANSFER))
        self.assertEqual(row.roles, frozenset({Role.ADMIN}))

    def test_upload_proof_is_transfer_only(self):
        self.assertIsNotNone(
            lookup(WorkflowKind.LISTING_PROMOTION, State.WAITING_PAYMENT, "upload_proof", PaymentMethod.TRANSFER)
        )
        self.assertIsNone(
            lookup(WorkflowKind.LISTING_PROMOTION, State.WAITING_PAYMENT, "upload_proof", PaymentMethod.COD)
        )

    def test_ad_cod_verifies_from_waiting_payment(self):
        row = lookup(WorkflowKind.ADVERTISEMENT, State.WAITING_PAYMENT, "verify", PaymentMethod.COD)
        self.assertIsNotNone(row)
        self.assertEqual(row.target(PaymentMethod.COD), State.ACTIVE)
        self.assertIsNone(lookup(WorkflowKind.ADVERTISEMENT, State.WAITING_PAYMENT, "verify", PaymentMethod.TRANSFER))

    def test_ad_payment_rejection_returns_to_waiting_payment(self):
        row = lookup(WorkflowKind.ADVERTISEMENT, State.PAYMENT_UPLOADED, "reject_payment", PaymentMethod.TRANSFER)
        self.assertEqual(row.target(PaymentMethod.TRANSFER), State.WAITING_PAYMENT)
        self.assertEqual(row.effect(PaymentMethod.TRANSFER), PaymentEffect.REJECT)

    def test_transaction_cancel_allowed_from_every_open_state(self):
        for state in (State.PENDING, State.CONFIRMED, State.IN_PROGRESS):
            row = lookup(WorkflowKind.TRANSACTION, state, "cancel")
            self.assertIsNotNone(row, msg=state)
            self.assertEqual(row.target(None), State.CANCELLED)
        self.assertIsNone(lookup(WorkflowKind.TRANSACTION, State.CANCELLED, "confirm"))

    def test_expire_is_system_only(self):
        for kind in windowed_kinds():
            row = lookup(kind, State.ACTIVE, "expire", PaymentMethod.TRANSFER)
            self.assertEqual(row.roles, frozenset({Role.SYSTEM}))

    def test_payment_gate_and_terminal_helpers(self):
        self.assertTrue(requires_verified_payment(WorkflowKind.LISTING_PROMOTION, State.ACTIVE))
        self.assertTrue(requires_verified_payment(WorkflowKind.ADVERTISEMENT, State.ACTIVE))
        self.assertFalse(requires_verified_payment(WorkflowKind.LISTING_PROMOTION, State.WAITING_PAYMENT))
        self.assertFalse(requires_verified_payment(WorkflowKind.TRANSACTION, State.IN_PROGRESS))
        self.assertTrue(is_terminal(WorkflowKind.LISTING_PROMOTION, State.STOPPED))
        self.assertFalse(is_terminal(WorkflowKind.ADVERTISEMENT, State.ACTIVE))
        self.assertEqual(initial_state(WorkflowKind.TRANSACTION), State.NONE)
        self.assertIsNone(active_state(WorkflowKind.TRANSACTION))
        self.assertEqual(sorted(windowed_kinds()), [WorkflowKind.ADVERTISEMENT, WorkflowKind.LISTING_PROMOTION])

    def test_listing_publication_is_admin_moderated(self):
        table = transitions_for(WorkflowKind.LISTING_PUBLICATION)
        self.assertEqual(table.terminal_states, frozenset())
        self.assertIsNone(table.active_state)
        self.assertFalse(table.requires_payment)
        self.assertEqual(lookup(WorkflowKind.LISTING_PUBLICATION, State.NONE, "request").target(None), State.PENDING)
        for action in ("approve", "reject"):
            self.assertEqual(lookup(WorkflowKind.LISTING_PUBLICATION, State.PENDING, action).roles, frozenset({Role.ADMIN}))
        self.assertEqual(table.actions_from(State.INACTIVE), ["activate", "resubmit"])
        self.assertEqual(table.actions_from(State.REJECTED), ["resubmit"])
        self.assertFalse(requires_verified_payment(WorkflowKind.LISTING_PUBLICATION, State.ACTIVE))
        self.assertEqual(normalize_kind("listing-publication"), WorkflowKind.LISTING_PUBLICATION)

    def test_normalize_kind_accepts_slugs(self):
        self.assertEqual(normalize_kind("listing-promotion"), WorkflowKind.LISTING_PROMOTION)
        self.assertEqual(normalize_kind("ADVERTISEMENT"), WorkflowKind.ADVERTISEMENT)
        self.assertEqual(normalize_kind("transaction"), WorkflowKind.TRANSACTION)
        self.assertIsNone(normalize_kind("banner"))
        self.assertIsNone(normalize_kind(""))

    def test_unknown_kind_raises_key_error(self):
        with self.assertRaises(KeyError):
            transitions_for("BANNER")


if __name__ == "__main__":
    unittest.main()
