import unittest

from agentlens.merge_policy import (
    changed_fields,
    fold_usage,
    latch,
    max_of,
    merge_record,
    overwrite_if_usage,
    preserve_first,
    sum_rounded,
)


class MergeStrategyTests(unittest.TestCase):
    def test_basic_strategies(self) -> None:
        self.assertEqual(preserve_first(1, 2), 1)
        self.assertEqual(preserve_first(None, 2), 2)
        self.assertEqual(max_of(4, 2), 4)
        self.assertEqual(max_of(None, 2), 2)
        self.assertEqual(max_of(3, None), 3)
        self.assertEqual(sum_rounded(2)(0.1, 0.206), 0.31)
        self.assertEqual(sum_rounded(2)(0.1, None), 0.1)

    def test_latch_holds_terminal_value(self) -> None:
        status = latch("completed")
        self.assertEqual(status("started", "outbound"), "outbound")
        self.assertEqual(status("completed", "started"), "completed")
        self.assertEqual(status(None, "started"), "started")

    def test_usage_strategies_ignore_empty_maps(self) -> None:
        current = {"totalTokens": 5}
        self.assertEqual(overwrite_if_usage(current, {}), current)
        self.assertEqual(overwrite_if_usage(current, {"totalTokens": 9}), {"totalTokens": 9})
        self.assertEqual(fold_usage(current, {"promptTokens": 0}), current)
        self.assertEqual(fold_usage(current, {"totalTokens": 2}), {"totalTokens": 7})
        self.assertEqual(fold_usage(None, {"totalTokens": 2}), {"totalTokens": 2})


class MergeRecordTests(unittest.TestCase):
    def test_new_record_takes_incoming(self) -> None:
        self.assertEqual(merge_record(None, {"a": 1, "b": None}, {}), {"a": 1, "b": None})

    def test_unsupplied_fields_keep_stored_values(self) -> None:
        existing = {"id": 7, "created_at": 10, "note": "kept", "count": 2}
        merged = merge_record(existing, {"created_at": 20, "note": None, "count": 1}, {
            "created_at": preserve_first,
            "count": max_of,
        })
        self.assertEqual(merged, {"id": 7, "created_at": 10, "note": "kept", "count": 2})
        self.assertEqual(changed_fields(existing, merged), {})

    def test_changed_fields_reports_only_differences(self) -> None:
        existing = {"a": 1, "b": 2}
        self.assertEqual(changed_fields(existing, {"a": 1, "b": 3}), {"b": 3})


if __name__ == "__main__":
    unittest.main()
