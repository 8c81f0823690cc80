# User value: This test keeps finished analyses final and empty results unbillable.
import unittest

from utils.status_machine import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_INVALID,
    check_transition,
    classify_terminal,
    has_valid_result,
    is_allowed_transition,
    is_terminal,
)


class StatusMachineUnitTests(unittest.TestCase):
    def test_processing_can_finish_either_way(self):
        self.assertTrue(is_allowed_transition("processing", "completed"))
        self.assertTrue(is_allowed_transition("processing", "failed"))
        self.assertTrue(is_allowed_transition(None, "processing"))

    # User value: a finished analysis can never flip back or change its verdict.
    def test_terminal_states_are_final(self):
        self.assertFalse(is_allowed_transition("completed", "processing"))
        self.assertFalse(is_allowed_transition("completed", "failed"))
        self.assertFalse(is_allowed_transition("failed", "completed"))
        self.assertTrue(is_allowed_transition("completed", "completed"))

    def test_check_transition_logs_blocked_write(self):
        with self.assertLogs("api.status_machine", level="WARNING") as logs:
            ok = check_transition(job_id="j1", current="failed", target="completed", context="unit")
        self.assertFalse(ok)
        self.assertIn("status_transition_blocked", logs.output[0])

    def test_is_terminal(self):
        self.assertTrue(is_terminal("COMPLETED"))
        self.assertTrue(is_terminal("failed"))
        self.assertFalse(is_terminal("processing"))
        self.assertFalse(is_terminal(None))

    # User value: users are never charged for a result with missing required fields.
    def test_has_valid_result_requires_every_field(self):
        self.assertTrue(has_valid_result({"summary": "Good fit", "overall_score": 72}))
        self.assertTrue(has_valid_result({"summary": "ok", "overall_score": 0}))
        self.assertFalse(has_valid_result({"summary": "Good fit"}))
        self.assertFalse(has_valid_result({"summary": "  ", "overall_score": 72}))
        self.assertFalse(has_valid_result({"summary": "x", "overall_score": None}))
        self.assertFalse(has_valid_result({}))
        self.assertFalse(has_valid_result(None))

    def test_classify_terminal(self):
        self.assertEqual(classify_terminal("completed", {"summary": "s", "overall_score": 1}), OUTCOME_COMPLETED)
        self.assertEqual(classify_terminal("completed", {"summary": ""}), OUTCOME_INVALID)
        self.assertEqual(classify_terminal("failed", None), OUTCOME_FAILED)
        self.assertIsNone(classify_terminal("processing", None))


if __name__ == "__main__":
    unittest.main()
