"""Typed views over open-schema event payloads.

Producers send whatever their version emits, so every accessor type-checks
and falls back to a safe default instead of raising. A garbled field degrades
to "absent"; it never aborts ingestion.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from agentlens.models import AgentEvent, EventKind


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _int(value: Any, default: int | None = None) -> int | None:
    number = _number(value)
    if number is None:
        return default
    return int(number)


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def tool_call_id_for(payload: dict[str, Any], sequence: int) -> str:
    return _str(payload.get("toolCallId")) or f"tc_{sequence}"


@dataclass
class SessionStartedPayload:
    session_started_at: int | None = None
    user_identifier: str | None = None
    persona_mode: bool | None = None
    tool_names: list[str] = field(default_factory=list)
    attachments_count: int | None = None
    message_previews: Any = None

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> "SessionStartedPayload":
        return cls(
            session_started_at=_int(payload.get("sessionStartedAt")),
            user_identifier=_str(payload.get("userIdentifier")),
            persona_mode=_bool(payload.get("personaMode")),
            tool_names=_str_list(payload.get("toolNames")),
            attachments_count=_int(payload.get("attachmentsCount")),
            message_previews=payload.get("messagePreviews"),
        )


@dataclass
class SessionFinishedPayload:
    step_count: int | None = None
    tool_call_count: int | None = None
    estimated_usage: dict[str, Any] | None = None
    actual_usage: dict[str, Any] | None = None
    estimated_cost_usd: float | None = None
    actual_cost_usd: float | None = None
    finish_reason: str | None = None

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> "SessionFinishedPayload":
        return cls(
            step_count=_int(payload.get("stepCount")),
            tool_call_count=_int(payload.get("toolCallCount")),
            estimated_usage=_dict(payload.get("estimatedUsage")),
            actual_usage=_dict(payload.get("actualUsage")),
            estimated_cost_usd=_number(payload.get("estimatedCostUSD")),
            actual_cost_usd=_number(payload.get("actualCostUSD")),
            finish_reason=_str(payload.get("finishReason")),
        )


@dataclass
class StepFinishedPayload:
    step_index: int = 0
    text_length: int = 0
    tool_calls_count: int = 0
    tool_results_count: int = 0
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    generated_text_preview: str | None = None

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> "StepFinishedPayload":
        return cls(
            step_index=_int(payload.get("stepIndex"), 0),
            text_length=_int(payload.get("textLength"), 0),
            tool_calls_count=_int(payload.get("toolCallsCount"), 0),
            tool_results_count=_int(payload.get("toolResultsCount"), 0),
            finish_reason=_str(payload.get("finishReason")),
            usage=_dict(payload.get("usage")),
            generated_text_preview=_str(payload.get("generatedTextPreview")),
        )


@dataclass
class ToolCallPhasePayload:
    """``tool_call_started`` / ``tool_call_outbound``."""

    tool_call_id: str
    tool_name: str = "unknown"
    step_index: int = 0
    input_summary: Any = None

    @classmethod
    def parse(cls, payload: dict[str, Any], sequence: int, *, outbound: bool = False) -> "ToolCallPhasePayload":
        # Outbound events carry the sanitized arguments under argsSummary.
        summary = _dict(payload.get("argsSummary")) if outbound else payload.get("inputSummary")
        return cls(
            tool_call_id=tool_call_id_for(payload, sequence),
            tool_name=_str(payload.get("toolName")) or "unknown",
            step_index=_int(payload.get("stepIndex"), 0),
            input_summary=summary,
        )


@dataclass
class ToolCallResultPayload:
    """``tool_call_inbound`` / ``tool_call_finished``."""

    tool_call_id: str
    tool_name: str = "unknown"
    step_index: int = 0
    duration_ms: float | None = None
    cost_usd: float | None = None
    token_usage: dict[str, Any] | None = None
    result_summary: dict[str, Any] | None = None
    input_summary: Any = None
    is_error: bool = False

    @classmethod
    def parse(cls, payload: dict[str, Any], sequence: int) -> "ToolCallResultPayload":
        result_summary = _dict(payload.get("resultSummary"))
        return cls(
            tool_call_id=tool_call_id_for(payload, sequence),
            tool_name=_str(payload.get("toolName")) or "unknown",
            step_index=_int(payload.get("stepIndex"), 0),
            duration_ms=_number(payload.get("durationMs")),
            cost_usd=_number(payload.get("costUSD")),
            token_usage=_dict(payload.get("tokenUsage")),
            result_summary=result_summary,
            input_summary=payload.get("inputSummary"),
            is_error=bool(result_summary.get("isError")) if result_summary else False,
        )


@dataclass
class MessageLoggedPayload:
    role: str | None = None
    message_id: str | None = None
    char_count: int | None = None

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> "MessageLoggedPayload":
        return cls(
            role=_str(payload.get("role")),
            message_id=_str(payload.get("messageId")),
            char_count=_int(payload.get("charCount")),
        )


EventPayload = Union[
    SessionStartedPayload,
    SessionFinishedPayload,
    StepFinishedPayload,
    ToolCallPhasePayload,
    ToolCallResultPayload,
    MessageLoggedPayload,
    None,
]


def parse_event_payload(event: AgentEvent) -> EventPayload:
    """Parse ``event.payload`` into the typed view for its kind.

    Informational and unknown kinds have no typed view and return ``None``.
    """
    kind = event.event_kind
    payload = event.payload
    if kind is EventKind.SESSION_STARTED:
        return SessionStartedPayload.parse(payload)
    if kind is EventKind.SESSION_FINISHED:
        return SessionFinishedPayload.parse(payload)
    if kind is EventKind.STEP_FINISHED:
        return StepFinishedPayload.parse(payload)
    if kind is EventKind.TOOL_CALL_STARTED:
        return ToolCallPhasePayload.parse(payload, event.sequence)
    if kind is EventKind.TOOL_CALL_OUTBOUND:
        return ToolCallPhasePayload.parse(payload, event.sequence, outbound=True)
    if kind in (EventKind.TOOL_CALL_INBOUND, EventKind.TOOL_CALL_FINISHED):
        return ToolCallResultPayload.parse(payload, event.sequence)
    if kind is EventKind.MESSAGE_LOGGED:
        return MessageLoggedPayload.parse(payload)
    return None
