import unittest
from unittest.mock import patch

import aiosqlite
from fastapi import HTTPException

from agentlens.db.sqlite_migrations import run_migrations
from agentlens.models import BatchRunResultUpdate, BatchRunStart
from agentlens.routers import batch_runs as batch_runs_router
from agentlens.services import batch_runs


class BatchRunHelperTests(unittest.TestCase):
    def test_sanitize_prompts_trims_and_drops_blank(self) -> None:
        self.assertEqual(batch_runs.sanitize_prompts(["  a ", "", "   ", "b"]), ["a", "b"])

    def test_sanitize_tags_empty_becomes_none(self) -> None:
        self.assertIsNone(batch_runs.sanitize_tags([" ", ""]))
        self.assertIsNone(batch_runs.sanitize_tags(None))
        self.assertEqual(batch_runs.sanitize_tags([" eval ", "x"]), ["eval", "x"])

    def test_derive_total_runs(self) -> None:
        self.assertEqual(batch_runs.derive_total_runs(["a", "b"], 3, None), 6)
        self.assertEqual(batch_runs.derive_total_runs(["a", "b"], 3, 10), 10)
        self.assertEqual(batch_runs.derive_total_runs(["a", "b"], 3, 4), 6)
        self.assertEqual(batch_runs.derive_total_runs(["a"], 0, None), 1)
        self.assertEqual(batch_runs.derive_total_runs(["a"], 2.5, None), 3)
        self.assertEqual(batch_runs.derive_total_runs(["a"], 1, float("inf")), 1)


class BatchRunServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _start(self, batch_id: str = "b-1", **overrides) -> int:
        body = {
            "name": "  nightly  ",
            "batchId": batch_id,
            "prompts": ["one", " two ", ""],
            "runsPerPrompt": 2,
            "delayMs": 250.4,
            "restoreBaseline": True,
            "tags": ["  smoke "],
            "startedAt": 5000,
        }
        body.update(overrides)
        result = await batch_runs.record_batch_start(self.db, BatchRunStart(**body))
        self.assertTrue(result.ok)
        return result.batchRunId

    async def test_start_normalizes_inputs(self) -> None:
        await self._start()

        [run] = await batch_runs.list_recent_batch_runs(self.db)
        self.assertEqual(run.name, "nightly")
        self.assertEqual(run.prompts, ["one", "two"])
        self.assertEqual(run.promptCount, 2)
        self.assertEqual(run.totalRuns, 4)
        self.assertEqual(run.runsPerPrompt, 2)
        self.assertEqual(run.delayMs, 250)
        self.assertTrue(run.restoreBaseline)
        self.assertEqual(run.tags, ["smoke"])
        self.assertEqual(run.startedAt, 5000)
        self.assertEqual(run.status, "running")
        self.assertIsNone(run.finishedAt)
        self.assertEqual((run.successCount, run.failureCount), (0, 0))

    async def test_blank_name_and_tags_stored_empty(self) -> None:
        await self._start(name="   ", tags=[" "])

        [run] = await batch_runs.list_recent_batch_runs(self.db)
        self.assertIsNone(run.name)
        self.assertEqual(run.tags, [])

    async def test_result_finishes_running_batch(self) -> None:
        run_id = await self._start()

        result = await batch_runs.record_batch_result(
            self.db, run_id, BatchRunResultUpdate(finishedAt=9000, successCount=3.6, failureCount=-2)
        )

        self.assertTrue(result.ok)
        [run] = await batch_runs.list_recent_batch_runs(self.db)
        self.assertEqual(run.status, "finished")
        self.assertEqual(run.finishedAt, 9000)
        self.assertEqual(run.successCount, 4)
        self.assertEqual(run.failureCount, 0)

    async def test_result_keeps_terminal_status_unless_given(self) -> None:
        run_id = await self._start()
        await batch_runs.record_batch_result(self.db, run_id, BatchRunResultUpdate(status="aborted"))
        await batch_runs.record_batch_result(self.db, run_id, BatchRunResultUpdate(successCount=1))

        [run] = await batch_runs.list_recent_batch_runs(self.db)
        self.assertEqual(run.status, "aborted")
        self.assertEqual(run.successCount, 1)

    async def test_result_for_missing_run(self) -> None:
        result = await batch_runs.record_batch_result(self.db, 404, BatchRunResultUpdate())
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "not_found")

    async def test_list_newest_first_and_clamped(self) -> None:
        for i in range(3):
            await self._start(batch_id=f"b-{i}", startedAt=1000 * (i + 1))

        runs = await batch_runs.list_recent_batch_runs(self.db)
        self.assertEqual([r.batchId for r in runs], ["b-2", "b-1", "b-0"])

        limited = await batch_runs.list_recent_batch_runs(self.db, 0)
        self.assertEqual(len(limited), 3)
        one = await batch_runs.list_recent_batch_runs(self.db, -5)
        self.assertEqual([r.batchId for r in one], ["b-2"])

    async def test_delete_run(self) -> None:
        run_id = await self._start()

        self.assertTrue((await batch_runs.delete_batch_run(self.db, run_id)).ok)
        self.assertEqual(await batch_runs.list_recent_batch_runs(self.db), [])
        missing = await batch_runs.delete_batch_run(self.db, run_id)
        self.assertEqual(missing.error, "not_found")


class BatchRunRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_start_result_list_delete(self) -> None:
        with patch.object(batch_runs_router.connection, "get_connection", return_value=self.db):
            started = await batch_runs_router.record_batch_start(
                BatchRunStart(batchId="b-1", prompts=["p"], startedAt=10)
            )
            await batch_runs_router.record_batch_result(
                started.batchRunId, BatchRunResultUpdate(successCount=1, finishedAt=20)
            )
            runs = await batch_runs_router.list_recent_batch_runs(limit=None)
            deleted = await batch_runs_router.delete_batch_run(started.batchRunId)

        self.assertEqual([(r.batchId, r.status, r.successCount) for r in runs], [("b-1", "finished", 1)])
        self.assertTrue(deleted.ok)

    async def test_missing_run_is_404(self) -> None:
        with patch.object(batch_runs_router.connection, "get_connection", return_value=self.db):
            with self.assertRaises(HTTPException) as ctx:
                await batch_runs_router.record_batch_result(7, BatchRunResultUpdate())
            self.assertEqual(ctx.exception.status_code, 404)
            with self.assertRaises(HTTPException) as ctx:
                await batch_runs_router.delete_batch_run(7)
            self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
