from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("listingflow")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_workflows_segment(self):
        module = importlib.import_module("listingflow.segments.segment_workflows")
        self.assertIsNotNone(getattr(module, "workflows_bp", None))

    def test_import_workflow_tasks(self):
        module = importlib.import_module("listingflow.tasks.workflow_tasks")
        task = getattr(module, "run_expiry_sweep", None)
        self.assertEqual(getattr(task, "name", ""), "listingflow.tasks.workflow_tasks.run_expiry_sweep")


if __name__ == "__main__":
    unittest.main()
