import unittest

from agentlens.timing import (
    derive_end_to_end_timing,
    timing_patch,
    timing_with_fallback,
)


class TimingDerivationTests(unittest.TestCase):
    def test_message_timestamps_take_priority(self) -> None:
        timing = derive_end_to_end_timing({
            "first_user_message_at": 100,
            "last_assistant_message_at": 500,
            "session_started_at": 50,
            "session_finished_at": 600,
        })
        self.assertEqual(timing.started_at, 100)
        self.assertEqual(timing.finished_at, 500)
        self.assertEqual(timing.duration_ms, 400)

    def test_falls_back_to_session_and_event_bounds(self) -> None:
        timing = derive_end_to_end_timing({
            "session_started_at": 200,
            "first_event_at": 150,
            "session_finished_at": 900,
            "last_event_at": 950,
        })
        self.assertEqual((timing.started_at, timing.finished_at, timing.duration_ms), (150, 950, 800))

    def test_duration_is_none_when_bounds_missing_or_inverted(self) -> None:
        self.assertIsNone(derive_end_to_end_timing({"session_started_at": 10}).duration_ms)
        inverted = derive_end_to_end_timing({"first_user_message_at": 500, "last_assistant_message_at": 100})
        self.assertEqual(inverted.started_at, 500)
        self.assertIsNone(inverted.duration_ms)
        empty = derive_end_to_end_timing({})
        self.assertEqual((empty.started_at, empty.finished_at, empty.duration_ms), (None, None, None))

    def test_non_finite_values_are_ignored(self) -> None:
        timing = derive_end_to_end_timing({"session_started_at": float("nan"), "first_event_at": 5, "last_event_at": 9})
        self.assertEqual((timing.started_at, timing.duration_ms), (5, 4))

    def test_read_time_fallback_keeps_stored_values(self) -> None:
        fields = timing_with_fallback({
            "end_to_end_started_at": 1,
            "first_event_at": 10,
            "last_event_at": 30,
        })
        self.assertEqual(fields["end_to_end_started_at"], 1)
        self.assertEqual(fields["end_to_end_finished_at"], 30)
        self.assertEqual(fields["end_to_end_duration_ms"], 20)


class TimingPatchTests(unittest.TestCase):
    def test_new_extremum_patches_changed_fields_and_updated_at(self) -> None:
        session = {
            "first_event_at": 100,
            "last_event_at": 200,
            "end_to_end_started_at": 100,
            "end_to_end_finished_at": 200,
            "end_to_end_duration_ms": 100,
            "updated_at": 250,
        }
        patch = timing_patch(session, 300, "step_finished", None)
        self.assertEqual(patch, {
            "last_event_at": 300,
            "end_to_end_finished_at": 300,
            "end_to_end_duration_ms": 200,
            "updated_at": 300,
        })

    def test_updated_at_never_moves_backwards(self) -> None:
        patch = timing_patch({"first_event_at": 100, "last_event_at": 200, "updated_at": 999}, 50, "other", None)
        self.assertEqual(patch["first_event_at"], 50)
        self.assertEqual(patch["updated_at"], 999)

    def test_message_roles_track_user_and_assistant_bounds(self) -> None:
        session = {"first_event_at": 100, "last_event_at": 600}
        user_patch = timing_patch(session, 150, "message_logged", "user")
        self.assertEqual(user_patch["first_user_message_at"], 150)
        assistant_patch = timing_patch(session, 400, "message_logged", "assistant")
        self.assertEqual(assistant_patch["last_assistant_message_at"], 400)
        self.assertNotIn("first_user_message_at", timing_patch(session, 150, "message_logged", "system"))

    def test_no_write_when_nothing_moves_and_timing_is_stored(self) -> None:
        session = {
            "first_event_at": 100,
            "last_event_at": 200,
            "end_to_end_started_at": 100,
            "end_to_end_finished_at": 200,
            "end_to_end_duration_ms": 100,
            "updated_at": 200,
        }
        self.assertEqual(timing_patch(session, 150, "step_finished", None), {})

    def test_backfills_incomplete_stored_timing(self) -> None:
        session = {"first_event_at": 100, "last_event_at": 200, "updated_at": 200}
        patch = timing_patch(session, 150, "step_finished", None)
        self.assertEqual(patch, {
            "end_to_end_started_at": 100,
            "end_to_end_finished_at": 200,
            "end_to_end_duration_ms": 100,
            "updated_at": 200,
        })


if __name__ == "__main__":
    unittest.main()
