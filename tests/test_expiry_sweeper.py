from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta

from listingflow import create_app
from listingflow.celery_app import create_celery_app
from listingflow.extensions import db
from listingflow.jobs.expiry_sweeper import JOB_NAME, run_expiry_sweep
from listingflow.models import Advertisement, JobRun, Listing, User, WorkflowInstance
from listingflow.services.state_registry import State, WorkflowKind
from listingflow.services.transition_engine import apply, history, open_workflow
from listingflow.tasks import workflow_tasks
from listingflow.utils.job_runs import last_run


class ExpirySweeperTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._saved_env = {
            "SQLALCHEMY_DATABASE_URI": os.getenv("SQLALCHEMY_DATABASE_URI"),
            "DATABASE_URL": os.getenv("DATABASE_URL"),
            "WORKFLOW_EXPIRY_INTERVAL_SECONDS": os.getenv("WORKFLOW_EXPIRY_INTERVAL_SECONDS"),
        }
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["WORKFLOW_EXPIRY_INTERVAL_SECONDS"] = "900"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.now = datetime(2024, 5, 10, 8, 30, 0)
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.session.remove()
        db.drop_all()
        db.create_all()

        provider = User(name="provider", email="provider@listingflow.test", role="provider")
        provider.set_password("password123")
        admin = User(name="admin", email="admin@listingflow.test", role="admin")
        admin.set_password("password123")
        db.session.add_all([provider, admin])
        db.session.flush()
        short_listing = Listing(user_id=provider.id, title="Short promo")
        long_listing = Listing(user_id=provider.id, title="Long promo")
        db.session.add_all([short_listing, long_listing])
        db.session.flush()
        ad = Advertisement(provider_id=provider.id, title="Sidebar ad")
        db.session.add(ad)
        db.session.commit()

        self.provider = {"id": int(provider.id), "role": "provider"}
        self.admin = {"id": int(admin.id), "role": "admin"}
        self.short_listing_id = int(short_listing.id)
        self.long_listing_id = int(long_listing.id)
        self.ad_id = int(ad.id)

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    def _active_promotion(self, listing_id: int, days: int) -> int:
        instance = open_workflow(
            WorkflowKind.LISTING_PROMOTION,
            listing_id,
            self.provider,
            method="COD",
            days=days,
            now=self.now,
        )
        apply(instance.id, "approve", self.admin, now=self.now)
        return int(instance.id)

    def _active_ad(self, days: int) -> int:
        instance = open_workflow(
            WorkflowKind.ADVERTISEMENT,
            self.ad_id,
            self.provider,
            method="COD",
            amount=2500,
            days=days,
            now=self.now,
        )
        apply(instance.id, "approve", self.admin, now=self.now)
        apply(instance.id, "verify", self.admin, now=self.now)
        return int(instance.id)

    def test_sweep_expires_elapsed_windows_once(self):
        short_id = self._active_promotion(self.short_listing_id, 2)
        long_id = self._active_promotion(self.long_listing_id, 30)
        ad_id = self._active_ad(5)
        sweep_at = self.now + timedelta(days=6)

        first = run_expiry_sweep(now=sweep_at)
        self.assertTrue(first["ok"])
        self.assertEqual(first["expired"], 2)
        self.assertEqual(sorted(first["expired_ids"]), sorted([short_id, ad_id]))

        self.assertEqual(db.session.get(WorkflowInstance, short_id).state, State.EXPIRED)
        self.assertEqual(db.session.get(WorkflowInstance, ad_id).state, State.EXPIRED)
        self.assertEqual(db.session.get(WorkflowInstance, long_id).state, State.ACTIVE)

        second = run_expiry_sweep(now=sweep_at)
        self.assertEqual(second["processed"], 0)
        self.assertEqual(second["expired"], 0)

        expire_rows = [row for row in history(db.session.get(WorkflowInstance, short_id)) if row.action == "expire"]
        self.assertEqual(len(expire_rows), 1)
        self.assertEqual(JobRun.query.filter_by(job_name=JOB_NAME).count(), 2)
        self.assertTrue(last_run(JOB_NAME).ok)

    def test_stopped_instances_are_not_swept(self):
        instance_id = self._active_promotion(self.short_listing_id, 1)
        apply(instance_id, "stop", self.provider, now=self.now)

        result = run_expiry_sweep(now=self.now + timedelta(days=3))
        self.assertEqual(result["processed"], 0)
        self.assertEqual(db.session.get(WorkflowInstance, instance_id).state, State.STOPPED)

    def test_limit_bounds_one_batch(self):
        self._active_promotion(self.short_listing_id, 1)
        self._active_promotion(self.long_listing_id, 1)

        result = run_expiry_sweep(limit=1, now=self.now + timedelta(days=2))
        self.assertEqual(result["expired"], 1)
        result = run_expiry_sweep(limit=1, now=self.now + timedelta(days=2))
        self.assertEqual(result["expired"], 1)
        result = run_expiry_sweep(limit=1, now=self.now + timedelta(days=2))
        self.assertEqual(result["expired"], 0)

    def test_celery_task_runs_sweep(self):
        self._active_promotion(self.short_listing_id, 1)
        # Real time is well past the fixed test clock, so the window has elapsed.
        res = workflow_tasks.run_expiry_sweep.apply(kwargs={"limit": 10, "trace_id": "trace_sweep"})
        body = res.get()
        self.assertTrue(body["ok"])
        self.assertEqual(body["expired"], 1)

    def test_retry_countdown_is_capped(self):
        self.assertEqual(workflow_tasks._retry_countdown(0), 5)
        self.assertEqual(workflow_tasks._retry_countdown(2), 20)
        self.assertEqual(workflow_tasks._retry_countdown(12), 900)

    def test_beat_schedule_registers_sweeper(self):
        celery = create_celery_app(self.app)
        schedule = celery.conf.beat_schedule
        self.assertIn("workflow-expiry-sweeper", schedule)
        entry = schedule["workflow-expiry-sweeper"]
        self.assertEqual(entry["task"], "listingflow.tasks.workflow_tasks.run_expiry_sweep")
        self.assertEqual(float(entry["schedule"]), 900.0)


if __name__ == "__main__":
    unittest.main()
