from __future__ import annotations

import os
import shutil
import tempfile
import threading
import unittest

from listingflow import create_app
from listingflow.extensions import db
from listingflow.models import Advertisement, Listing, User, WorkflowInstance, WorkflowTransition
from listingflow.services.errors import InvalidTransition, WorkflowError
from listingflow.services.state_registry import State, WorkflowKind
from listingflow.services.transition_engine import apply, open_workflow


class EngineConcurrencyTestCase(unittest.TestCase):
    """Runs against a file-backed database so each thread gets its own connection."""

    @classmethod
    def setUpClass(cls):
        cls._saved_env = {
            "SQLALCHEMY_DATABASE_URI": os.getenv("SQLALCHEMY_DATABASE_URI"),
            "DATABASE_URL": os.getenv("DATABASE_URL"),
            "LISTINGFLOW_ENV": os.getenv("LISTINGFLOW_ENV"),
        }
        cls._db_dir = tempfile.mkdtemp(prefix="listingflow-")
        db_path = os.path.join(cls._db_dir, "workflows.db").replace(os.sep, "/")
        db_uri = f"sqlite:///{db_path}"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["LISTINGFLOW_ENV"] = "test"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.session.remove()
            db.engine.dispose()
        shutil.rmtree(cls._db_dir, ignore_errors=True)
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.create_all()
            provider = User(name="provider", email="provider@listingflow.test", role="provider")
            admin = User(name="admin", email="admin@listingflow.test", role="admin")
            for row in (provider, admin):
                row.set_password("password123")
            db.session.add_all([provider, admin])
            db.session.flush()
            listing = Listing(user_id=provider.id, title="Loft")
            ad = Advertisement(provider_id=provider.id, title="Footer banner")
            db.session.add_all([listing, ad])
            db.session.commit()

            self.provider = {"id": int(provider.id), "role": "provider"}
            self.admin = {"id": int(admin.id), "role": "admin"}
            self.listing_id = int(listing.id)
            self.ad_id = int(ad.id)

    def _run_together(self, calls):
        barrier = threading.Barrier(len(calls))
        outcomes = []

        def worker(label, fn):
            with self.app.app_context():
                barrier.wait(timeout=10)
                try:
                    fn()
                    outcomes.append((label, None))
                except WorkflowError as exc:
                    outcomes.append((label, exc))

        threads = [threading.Thread(target=worker, args=(label, fn)) for label, fn in calls]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        self.assertEqual(len(outcomes), len(calls))
        return outcomes

    def test_concurrent_verify_and_reject_payment_linearize(self):
        with self.app.app_context():
            instance = open_workflow(
                WorkflowKind.ADVERTISEMENT,
                self.ad_id,
                self.provider,
                method="TRANSFER",
                amount=4000,
                days=5,
            )
            instance_id = int(instance.id)
            apply(instance_id, "approve", self.admin)
            apply(instance_id, "upload_proof", self.provider, proof_reference="transfer-001")
            before = WorkflowTransition.query.filter_by(instance_id=instance_id).count()

        outcomes = self._run_together([
            ("verify", lambda: apply(instance_id, "verify", self.admin)),
            ("reject_payment", lambda: apply(instance_id, "reject_payment", self.admin, reason="blurry")),
        ])

        succeeded = [label for label, exc in outcomes if exc is None]
        failed = [exc for label, exc in outcomes if exc is not None]
        self.assertEqual(len(succeeded), 1, outcomes)
        self.assertEqual(len(failed), 1, outcomes)
        self.assertIsInstance(failed[0], InvalidTransition)

        with self.app.app_context():
            rows = (
                WorkflowTransition.query.filter_by(instance_id=instance_id)
                .order_by(WorkflowTransition.id.asc())
                .all()
            )
            self.assertEqual(len(rows), before + 1)
            self.assertEqual(rows[-1].action, succeeded[0])
            expected = State.ACTIVE if succeeded[0] == "verify" else State.WAITING_PAYMENT
            self.assertEqual(db.session.get(WorkflowInstance, instance_id).state, expected)

    def test_concurrent_requests_open_one_publication(self):
        outcomes = self._run_together([
            ("first", lambda: open_workflow(WorkflowKind.LISTING_PUBLICATION, self.listing_id, self.provider)),
            ("second", lambda: open_workflow(WorkflowKind.LISTING_PUBLICATION, self.listing_id, self.provider)),
        ])

        failed = [exc for label, exc in outcomes if exc is not None]
        self.assertEqual(len(failed), 1, outcomes)
        self.assertIsInstance(failed[0], InvalidTransition)

        with self.app.app_context():
            instances = WorkflowInstance.query.filter_by(kind=WorkflowKind.LISTING_PUBLICATION).all()
            self.assertEqual(len(instances), 1)
            self.assertEqual(instances[0].state, State.PENDING)
            self.assertEqual(WorkflowTransition.query.filter_by(instance_id=instances[0].id).count(), 1)
            self.assertEqual(db.session.get(Listing, self.listing_id).status, State.PENDING)


if __name__ == "__main__":
    unittest.main()
