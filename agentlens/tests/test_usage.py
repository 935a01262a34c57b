import unittest

from agentlens.usage import clean_usage, has_usage, merge_usage, usage_value


class UsageMergeTests(unittest.TestCase):
    def test_sums_per_key_without_recomputing_total(self) -> None:
        merged = merge_usage(
            {"promptTokens": 10, "totalTokens": 10},
            {"promptTokens": 5, "completionTokens": 3},
        )
        self.assertEqual(merged, {"promptTokens": 15, "completionTokens": 3, "totalTokens": 10})

    def test_zero_sums_are_dropped_and_values_rounded(self) -> None:
        merged = merge_usage({"charCount": 2, "reasoningTokens": 0.1}, {"charCount": -2, "reasoningTokens": 0.2})
        self.assertEqual(merged, {"reasoningTokens": 0.3})

    def test_non_numeric_and_missing_values_count_as_zero(self) -> None:
        merged = merge_usage(None, {"promptTokens": "12", "cachedInputTokens": True, "totalTokens": 4})
        self.assertEqual(merged, {"totalTokens": 4})

    def test_has_usage_requires_a_positive_known_key(self) -> None:
        self.assertFalse(has_usage(None))
        self.assertFalse(has_usage({}))
        self.assertFalse(has_usage({"promptTokens": 0, "unknownTokens": 50}))
        self.assertTrue(has_usage({"completionTokens": 1}))

    def test_usage_value_and_clean_usage(self) -> None:
        self.assertEqual(usage_value({"totalTokens": 42}, "totalTokens"), 42)
        self.assertEqual(usage_value("garbage", "totalTokens"), 0)
        self.assertEqual(clean_usage({"totalTokens": 3, "note": "x", "promptTokens": "2"}), {"totalTokens": 3})
        self.assertIsNone(clean_usage({"note": "x"}))


if __name__ == "__main__":
    unittest.main()
