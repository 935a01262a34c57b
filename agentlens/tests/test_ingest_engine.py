import unittest
from unittest.mock import AsyncMock, patch

import aiosqlite

from agentlens.db import event_handlers
from agentlens.db.ingest_engine import IngestEngine
from agentlens.db.repositories.events import SqliteEventRepository
from agentlens.db.repositories.sessions import SqliteSessionRepository
from agentlens.db.repositories.steps import SqliteStepRepository
from agentlens.db.repositories.tool_calls import SqliteToolCallRepository
from agentlens.db.sqlite_migrations import run_migrations
from agentlens.models import AgentEvent, EventKind
from agentlens.parsers.events import StepFinishedPayload


def _event(sequence, kind, payload=None, *, session_id="s-1", request_id="r-1", timestamp=None, **extra) -> AgentEvent:
    return AgentEvent(
        sessionId=session_id,
        requestId=request_id,
        sequence=sequence,
        timestamp=timestamp if timestamp is not None else 1000 + sequence * 100,
        kind=kind,
        payload=payload or {},
        **extra,
    )


class IngestEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.engine = IngestEngine(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.steps = SqliteStepRepository(self.db)
        self.tool_calls = SqliteToolCallRepository(self.db)
        self.events = SqliteEventRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_duplicate_delivery_leaves_state_unchanged(self) -> None:
        await self.engine.ingest_event(_event(1, "session_started", {"toolNames": ["search"]}, model="m-1"))
        finished = _event(2, "tool_call_finished", {
            "toolCallId": "tc-a",
            "toolName": "search",
            "durationMs": 40,
            "costUSD": 1.25,
            "tokenUsage": {"promptTokens": 10, "totalTokens": 12},
        })
        await self.engine.ingest_event(finished)
        session_before = await self.sessions.get_by_session_id("s-1")
        call_before = await self.tool_calls.get("s-1", "tc-a")

        result = await self.engine.ingest_event(finished)

        self.assertEqual(result, {"ok": True})
        self.assertEqual(await self.sessions.get_by_session_id("s-1"), session_before)
        self.assertEqual(await self.tool_calls.get("s-1", "tc-a"), call_before)
        self.assertEqual(len(await self.events.list_for_session("s-1")), 2)
        self.assertEqual(session_before["tool_call_count"], 1)
        self.assertEqual(session_before["estimated_cost_usd"], 1.25)
        self.assertEqual(session_before["estimated_usage"], {"promptTokens": 10, "totalTokens": 12})

    async def test_tool_call_lifecycle_folds_cost_once(self) -> None:
        await self.engine.ingest_event(_event(1, "tool_call_started", {
            "toolCallId": "tc-1", "toolName": "fetch", "stepIndex": 0, "inputSummary": {"url": "x"},
        }))
        await self.engine.ingest_event(_event(2, "tool_call_outbound", {
            "toolCallId": "tc-1", "toolName": "fetch", "argsSummary": {"url": "x"},
        }))
        await self.engine.ingest_event(_event(3, "tool_call_finished", {
            "toolCallId": "tc-1", "toolName": "fetch", "durationMs": 50, "costUSD": 2.5,
        }))
        await self.engine.ingest_event(_event(4, "tool_call_finished", {
            "toolCallId": "tc-1", "toolName": "fetch", "durationMs": 50, "costUSD": 2.5,
        }))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["estimated_cost_usd"], 2.5)
        self.assertEqual(session["tool_call_count"], 1)

        call = await self.tool_calls.get("s-1", "tc-1")
        self.assertEqual(call["status"], "completed")
        self.assertEqual(call["started_at"], 1100)
        self.assertEqual(call["completed_at"], 1400)
        self.assertEqual(call["outbound_sequence"], 2)
        self.assertEqual(call["outbound_payload"]["argsSummary"], {"url": "x"})
        self.assertEqual(call["result_summary"], {})
        self.assertFalse(call["is_error"])

    async def test_inbound_completes_and_finished_does_not_refold(self) -> None:
        await self.engine.ingest_event(_event(1, "tool_call_inbound", {
            "toolCallId": "tc-1", "toolName": "fetch", "costUSD": 0.5,
            "resultSummary": {"isError": True},
        }))
        await self.engine.ingest_event(_event(2, "tool_call_finished", {
            "toolCallId": "tc-1", "toolName": "fetch", "costUSD": 0.75,
        }))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["tool_call_count"], 1)
        self.assertEqual(session["estimated_cost_usd"], 0.5)

        call = await self.tool_calls.get("s-1", "tc-1")
        self.assertEqual(call["status"], "completed")
        self.assertEqual(call["inbound_sequence"], 1)
        self.assertEqual(call["cost_usd"], 0.75)

    async def test_late_started_event_does_not_reopen_completed_call(self) -> None:
        await self.engine.ingest_event(_event(5, "tool_call_finished", {
            "toolCallId": "tc-1", "toolName": "fetch", "durationMs": 300,
        }))
        await self.engine.ingest_event(_event(3, "tool_call_started", {"toolCallId": "tc-1", "toolName": "fetch"}))

        call = await self.tool_calls.get("s-1", "tc-1")
        self.assertEqual(call["status"], "completed")
        self.assertEqual(call["started_at"], 1200)

    async def test_missing_tool_call_id_falls_back_to_sequence(self) -> None:
        await self.engine.ingest_event(_event(7, "tool_call_started", {"toolName": "grep"}))
        call = await self.tool_calls.get("s-1", "tc_7")
        self.assertEqual(call["tool_name"], "grep")
        self.assertEqual(call["status"], "started")

    async def test_step_count_is_monotonic_and_step_created_at_preserved(self) -> None:
        await self.engine.ingest_event(_event(1, "step_finished", {"stepIndex": 3, "textLength": 10}))
        await self.engine.ingest_event(_event(2, "step_finished", {"stepIndex": 1}))
        await self.engine.ingest_event(_event(3, "step_finished", {"stepIndex": 1, "finishReason": "stop"}))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["step_count"], 4)

        step = await self.steps.get("s-1", 1)
        self.assertEqual(step["created_at"], 1200)
        self.assertEqual(step["timestamp"], 1300)
        self.assertEqual(step["finish_reason"], "stop")

    async def test_session_started_then_finished(self) -> None:
        await self.engine.ingest_event(_event(1, "session_started", {
            "sessionStartedAt": 900,
            "personaMode": True,
            "toolNames": ["search", 4, "fetch"],
            "attachmentsCount": 2,
        }, userIdentifier="u-1", threadId="t-1"))
        await self.engine.ingest_event(_event(2, "session_finished", {
            "stepCount": 7,
            "estimatedCostUSD": 1.1234567,
            "actualUsage": {},
            "estimatedUsage": {"totalTokens": 30},
        }))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["session_started_at"], 900)
        self.assertTrue(session["persona_mode"])
        self.assertEqual(session["tool_names"], ["search", "fetch"])
        self.assertEqual(session["user_identifier"], "u-1")
        self.assertEqual(session["thread_id"], "t-1")
        self.assertEqual(session["session_finished_at"], 1200)
        self.assertEqual(session["step_count"], 7)
        self.assertEqual(session["estimated_cost_usd"], 1.123457)
        self.assertEqual(session["estimated_usage"], {"totalTokens": 30})
        self.assertIsNone(session["actual_usage"])

    async def test_request_id_match_rekeys_existing_session(self) -> None:
        await self.engine.ingest_event(_event(1, "session_started", session_id="s-old", request_id="r-1"))
        await self.engine.ingest_event(_event(2, "step_finished", {"stepIndex": 0}, session_id="s-new", request_id="r-1"))

        self.assertIsNone(await self.sessions.get_by_session_id("s-old"))
        session = await self.sessions.get_by_session_id("s-new")
        self.assertEqual(session["request_id"], "r-1")
        self.assertEqual(session["step_count"], 1)
        self.assertEqual(len(await self.sessions.list_recent(10)), 1)

    async def test_session_id_match_adopts_new_request_id(self) -> None:
        await self.engine.ingest_event(_event(1, "session_started", request_id="r-1"))
        await self.engine.ingest_event(_event(2, "message_logged", {"role": "user"}, request_id="r-2"))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["request_id"], "r-2")

    async def test_unknown_kind_only_touches_session(self) -> None:
        await self.engine.ingest_event(_event(1, "something_new", {"anything": 1}))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["updated_at"], 1100)
        self.assertEqual(session["tool_call_count"], 0)
        events = await self.events.list_for_session("s-1")
        self.assertEqual(events[0]["kind"], "something_new")

    async def test_malformed_payload_fields_degrade_to_absent(self) -> None:
        await self.engine.ingest_event(_event(1, "tool_call_finished", {
            "toolCallId": 12, "costUSD": "cheap", "durationMs": None, "tokenUsage": "lots",
        }))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["tool_call_count"], 1)
        self.assertIsNone(session["estimated_cost_usd"])
        call = await self.tool_calls.get("s-1", "tc_1")
        self.assertEqual(call["tool_name"], "unknown")
        self.assertIsNone(call["cost_usd"])

    async def test_message_timing_drives_end_to_end_duration(self) -> None:
        await self.engine.ingest_event(_event(1, "session_started", timestamp=50))
        await self.engine.ingest_event(_event(2, "message_logged", {"role": "user"}, timestamp=100))
        await self.engine.ingest_event(_event(3, "message_logged", {"role": "assistant"}, timestamp=500))
        await self.engine.ingest_event(_event(4, "session_finished", timestamp=600))

        session = await self.sessions.get_by_session_id("s-1")
        self.assertEqual(session["first_event_at"], 50)
        self.assertEqual(session["last_event_at"], 600)
        self.assertEqual(session["end_to_end_started_at"], 100)
        self.assertEqual(session["end_to_end_finished_at"], 500)
        self.assertEqual(session["end_to_end_duration_ms"], 400)
        self.assertEqual(session["updated_at"], 600)

    async def test_handler_failure_rolls_back_the_event(self) -> None:
        boom = AsyncMock(side_effect=RuntimeError("boom"))
        with patch.dict(event_handlers.EVENT_HANDLERS, {EventKind.STEP_FINISHED: boom}):
            with self.assertRaises(RuntimeError):
                await self.engine.ingest_event(_event(1, "step_finished", {"stepIndex": 0}))

        self.assertEqual(await self.events.list_for_session("s-1"), [])
        self.assertIsNone(await self.sessions.get_by_session_id("s-1"))

        await self.engine.ingest_event(_event(1, "step_finished", {"stepIndex": 0}))
        self.assertEqual(len(await self.events.list_for_session("s-1")), 1)


    async def test_handlers_receive_the_parsed_payload(self) -> None:
        handler = AsyncMock()
        with patch.dict(event_handlers.EVENT_HANDLERS, {EventKind.STEP_FINISHED: handler}):
            await self.engine.ingest_event(_event(1, "step_finished", {"stepIndex": 3, "finishReason": "stop"}))

        _, event, payload = handler.await_args.args
        self.assertEqual(event.sequence, 1)
        self.assertIsInstance(payload, StepFinishedPayload)
        self.assertEqual(payload.step_index, 3)


class RedeliveryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.engine = IngestEngine(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.steps = SqliteStepRepository(self.db)
        self.tool_calls = SqliteToolCallRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _snapshot(self) -> tuple:
        return (
            await self.sessions.get_by_session_id("s-1"),
            await self.steps.list_for_session("s-1"),
            await self.tool_calls.list_for_session("s-1"),
        )

    async def test_step_finished_redelivered_after_later_step(self) -> None:
        first_step = _event(2, "step_finished", {"stepIndex": 0, "textLength": 12, "usage": {"totalTokens": 5}})
        await self.engine.ingest_event(_event(1, "session_started"))
        await self.engine.ingest_event(first_step)
        await self.engine.ingest_event(_event(3, "step_finished", {"stepIndex": 1, "textLength": 4}))
        before = await self._snapshot()

        await self.engine.ingest_event(first_step)

        self.assertEqual(await self._snapshot(), before)
        self.assertEqual(before[0]["step_count"], 2)
        self.assertEqual(before[0]["updated_at"], 1300)

    async def test_session_started_redelivered_after_later_event(self) -> None:
        started = _event(1, "session_started", {"toolNames": ["search"], "attachmentsCount": 2}, model="m-1")
        await self.engine.ingest_event(started)
        await self.engine.ingest_event(_event(2, "step_finished", {"stepIndex": 0}))
        before = await self._snapshot()

        await self.engine.ingest_event(started)

        after = await self._snapshot()
        self.assertEqual(after, before)
        self.assertEqual(after[0]["updated_at"], 1200)
        self.assertEqual(after[0]["session_started_at"], 1100)

    async def test_tool_call_outbound_redelivered_after_finished(self) -> None:
        outbound = _event(2, "tool_call_outbound", {
            "toolCallId": "tc-1", "toolName": "fetch", "argsSummary": {"url": "x"},
        })
        await self.engine.ingest_event(_event(1, "tool_call_started", {"toolCallId": "tc-1", "toolName": "fetch"}))
        await self.engine.ingest_event(outbound)
        await self.engine.ingest_event(_event(3, "tool_call_finished", {
            "toolCallId": "tc-1", "toolName": "fetch", "durationMs": 80, "costUSD": 0.5,
        }))
        before = await self._snapshot()

        await self.engine.ingest_event(outbound)

        after = await self._snapshot()
        self.assertEqual(after, before)
        [call] = after[2]
        self.assertEqual(call["status"], "completed")
        self.assertEqual(call["updated_at"], 1300)
        self.assertEqual(after[0]["updated_at"], 1300)


class IngestObservabilityTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.engine = IngestEngine(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_metrics_label_duplicates_and_count_first_completion_only(self) -> None:
        finished = _event(1, "tool_call_finished", {
            "toolCallId": "tc-1", "toolName": "search", "durationMs": 30, "costUSD": 0.75,
            "tokenUsage": {"promptTokens": 7, "completionTokens": 3},
        }, model="m-1", source="cli")
        inbound_after = _event(2, "tool_call_inbound", {"toolCallId": "tc-1", "toolName": "search"}, source="cli")

        with patch("agentlens.db.ingest_engine.record_ingestion") as ingestion, \
                patch("agentlens.db.ingest_engine.record_tool_result") as tool_result, \
                patch("agentlens.db.ingest_engine.record_token_cost") as token_cost:
            await self.engine.ingest_event(finished)
            await self.engine.ingest_event(finished)
            await self.engine.ingest_event(inbound_after)

        results = [c.args[:2] for c in ingestion.call_args_list]
        self.assertEqual(results, [
            ("tool_call_finished", "applied"),
            ("tool_call_finished", "duplicate"),
            ("tool_call_inbound", "applied"),
        ])
        tool_result.assert_called_once_with("search", "success", source="cli", duration_ms=30)
        token_cost.assert_called_once_with(
            source="cli", model="m-1", tool="search",
            prompt_tokens=7, completion_tokens=3, cost_usd=0.75,
        )

    async def test_failure_is_counted_and_reraised(self) -> None:
        boom = AsyncMock(side_effect=RuntimeError("boom"))
        with patch.dict(event_handlers.EVENT_HANDLERS, {EventKind.OTHER: boom}), \
                patch("agentlens.db.ingest_engine.record_ingestion_failure") as failure, \
                patch("agentlens.db.ingest_engine.record_ingestion") as ingestion:
            with self.assertRaises(RuntimeError):
                await self.engine.ingest_event(_event(1, "mystery", source="cli"))

        failure.assert_called_once_with("other", source="cli")
        ingestion.assert_not_called()


class EventLogTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteEventRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_append_ignores_repeated_session_sequence(self) -> None:
        record = {
            "session_id": "s-1", "request_id": "r-1", "sequence": 1, "timestamp": 10,
            "kind": "session_started", "payload": {"a": 1}, "created_at": 10,
        }
        self.assertTrue(await self.repo.append(record))
        self.assertFalse(await self.repo.append({**record, "payload": {"a": 2}}))

        stored = await self.repo.get("s-1", 1)
        self.assertEqual(stored["payload"], {"a": 1})


if __name__ == "__main__":
    unittest.main()
