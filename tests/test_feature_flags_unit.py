# User value: This file verifies feature-flag parsing so operators can switch pipeline behaviour safely.
import importlib
import os
import unittest

import services.feature_flags as ff

_FLAGS = ("FEATURE_AUTO_SECOND_PASS", "FEATURE_AUTONOMOUS_COMMIT", "FEATURE_QUEUE_ORCHESTRATION")


class FeatureFlagsUnitTests(unittest.TestCase):
    def setUp(self):
        self._old = {name: os.environ.get(name) for name in _FLAGS}

    def tearDown(self):
        for name, value in self._old.items():
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value
        importlib.reload(ff)

    def test_defaults(self):
        for name in _FLAGS:
            os.environ.pop(name, None)
        importlib.reload(ff)
        self.assertFalse(ff.is_auto_second_pass_enabled())
        self.assertTrue(ff.is_autonomous_commit_enabled())
        self.assertTrue(ff.is_queue_orchestration_enabled())

    def test_truthy_and_falsy_values(self):
        os.environ["FEATURE_AUTO_SECOND_PASS"] = "yes"
        os.environ["FEATURE_AUTONOMOUS_COMMIT"] = "0"
        os.environ["FEATURE_QUEUE_ORCHESTRATION"] = "maybe"
        importlib.reload(ff)
        self.assertTrue(ff.is_auto_second_pass_enabled())
        self.assertFalse(ff.is_autonomous_commit_enabled())
        self.assertFalse(ff.is_queue_orchestration_enabled())


if __name__ == "__main__":
    unittest.main()
