"""Pydantic models for ingested events and the aggregate views served to the dashboard."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class EventKind(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_FINISHED = "session_finished"
    STEP_FINISHED = "step_finished"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_OUTBOUND = "tool_call_outbound"
    TOOL_CALL_INBOUND = "tool_call_inbound"
    TOOL_CALL_FINISHED = "tool_call_finished"
    MESSAGE_LOGGED = "message_logged"
    CLASSIFICATION_DECIDED = "classification_decided"
    CAPABILITY_ROUTED = "capability_routed"
    PERSONA_POST_PROCESSED = "persona_post_processed"
    OTHER = "other"

    @classmethod
    def from_raw(cls, value: str) -> "EventKind":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ToolCallStatus(str, Enum):
    STARTED = "started"
    OUTBOUND = "outbound"
    INBOUND_RECEIVED = "inbound_received"  # legacy rows only
    COMPLETED = "completed"


# ── Ingestion ───────────────────────────────────────────────────────

class AgentEvent(BaseModel):
    sessionId: str
    requestId: str
    timestamp: int
    sequence: int
    kind: str
    payload: dict[str, Any]
    source: Optional[str] = None
    model: Optional[str] = None
    threadId: Optional[str] = None
    personaMode: Optional[bool] = None
    dedupeKey: Optional[str] = None
    userIdentifier: Optional[str] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_object(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @property
    def event_kind(self) -> EventKind:
        return EventKind.from_raw(self.kind)


class IngestResult(BaseModel):
    ok: bool = True


# ── Session views ───────────────────────────────────────────────────

class SessionSummary(BaseModel):
    sessionId: str
    requestId: str
    userIdentifier: Optional[str] = None
    model: Optional[str] = None
    personaMode: bool = False
    toolCallCount: int = 0
    stepCount: int = 0
    estimatedCostUSD: float = 0.0
    actualCostUSD: Optional[float] = None
    estimatedUsage: Optional[dict[str, float]] = None
    actualUsage: Optional[dict[str, float]] = None
    sessionStartedAt: Optional[int] = None
    sessionFinishedAt: Optional[int] = None
    durationMs: Optional[float] = None
    endToEndStartedAt: Optional[int] = None
    endToEndFinishedAt: Optional[int] = None
    endToEndDurationMs: Optional[float] = None
    attachmentsCount: int = 0
    messagePreviews: Any = None
    tags: list[str] = Field(default_factory=list)
    customTitle: Optional[str] = None
    status: str = "active"  # "active" | "completed"
    updatedAt: int = 0
    createdAt: int = 0


class SessionDetail(BaseModel):
    sessionId: str
    requestId: str
    userIdentifier: Optional[str] = None
    threadId: Optional[str] = None
    model: Optional[str] = None
    personaMode: bool = False
    toolNames: list[str] = Field(default_factory=list)
    attachmentsCount: Optional[int] = None
    messagePreviews: Any = None
    stepCount: int = 0
    toolCallCount: int = 0
    estimatedUsage: Optional[dict[str, float]] = None
    actualUsage: Optional[dict[str, float]] = None
    estimatedCostUSD: Optional[float] = None
    actualCostUSD: Optional[float] = None
    sessionStartedAt: Optional[int] = None
    sessionFinishedAt: Optional[int] = None
    firstEventAt: Optional[int] = None
    lastEventAt: Optional[int] = None
    firstUserMessageAt: Optional[int] = None
    lastAssistantMessageAt: Optional[int] = None
    endToEndStartedAt: Optional[int] = None
    endToEndFinishedAt: Optional[int] = None
    endToEndDurationMs: Optional[float] = None
    tags: list[str] = Field(default_factory=list)
    customTitle: Optional[str] = None
    createdAt: int = 0
    updatedAt: int = 0


class StepRecord(BaseModel):
    sessionId: str
    requestId: str
    stepIndex: int
    timestamp: int
    textLength: int = 0
    toolCallsCount: int = 0
    toolResultsCount: int = 0
    finishReason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None
    generatedTextPreview: Optional[str] = None
    createdAt: int = 0


class ToolCallRecord(BaseModel):
    sessionId: str
    requestId: str
    toolCallId: str
    toolName: str = "unknown"
    stepIndex: int = 0
    status: str = ToolCallStatus.STARTED.value
    startedAt: Optional[float] = None
    completedAt: Optional[int] = None
    durationMs: Optional[float] = None
    inputSummary: Any = None
    resultSummary: Any = None
    tokenUsage: Optional[dict[str, Any]] = None
    costUSD: Optional[float] = None
    isError: Optional[bool] = None
    outboundSequence: Optional[int] = None
    outboundAt: Optional[int] = None
    outboundPayload: Optional[dict[str, Any]] = None
    inboundSequence: Optional[int] = None
    inboundAt: Optional[int] = None
    inboundPayload: Optional[dict[str, Any]] = None
    createdAt: int = 0
    updatedAt: int = 0


class EventRecord(BaseModel):
    sessionId: str
    requestId: str
    sequence: int
    timestamp: int
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    model: Optional[str] = None
    threadId: Optional[str] = None
    personaMode: Optional[bool] = None
    userIdentifier: Optional[str] = None
    dedupeKey: Optional[str] = None
    createdAt: int = 0


class SessionTimeline(BaseModel):
    session: SessionDetail
    steps: list[StepRecord] = Field(default_factory=list)
    toolCalls: list[ToolCallRecord] = Field(default_factory=list)
    events: list[EventRecord] = Field(default_factory=list)


# ── Tag mutations ───────────────────────────────────────────────────

class SessionTitleUpdate(BaseModel):
    tag: Optional[str] = None


class SessionTagCreate(BaseModel):
    tag: str


class TagMutationResult(BaseModel):
    ok: bool
    error: Optional[str] = None  # "not_found" | "invalid_tag"
    tag: Optional[str] = None
    tags: Optional[list[str]] = None


# ── Summary ─────────────────────────────────────────────────────────

class SummaryTotals(BaseModel):
    sessions: int = 0
    activeSessions: int = 0
    toolCalls: int = 0
    estimatedTokens: float = 0
    actualTokens: float = 0
    estimatedCostUSD: float = 0.0
    actualCostUSD: float = 0.0


class SummaryAverages(BaseModel):
    toolCallsPerSession: float = 0
    estimatedTokensPerSession: float = 0
    actualTokensPerSession: float = 0


class RecentToolCall(BaseModel):
    sessionId: str
    toolCallId: str
    toolName: str
    stepIndex: int = 0
    completedAt: int
    durationMs: Optional[float] = None
    costUSD: float = 0.0
    isError: bool = False
    tokenUsage: Optional[dict[str, Any]] = None


class MetricsSummary(BaseModel):
    totals: SummaryTotals
    averages: SummaryAverages
    recentToolCalls: list[RecentToolCall] = Field(default_factory=list)


class ToolStats(BaseModel):
    tool: str
    totalCalls: int = 0
    uniqueSessions: int = 0
    avgCallsPerSession: float = 0.0
    avgWhenUsed: float = 0.0
    errors: int = 0
    errorRate: float = 0.0
    avgMs: int = 0
    p95Ms: float = 0
    totalTokens: float = 0
    costUSD: float = 0.0
    maxConsecutive: int = 0


class RepeatOffenders(BaseModel):
    byTotalCalls: list[ToolStats] = Field(default_factory=list)
    byAvgCallsPerSession: list[ToolStats] = Field(default_factory=list)
    byMaxConsecutive: list[ToolStats] = Field(default_factory=list)
    byErrorRate: list[ToolStats] = Field(default_factory=list)


class ToolBreakdown(BaseModel):
    sessions: int = 0
    toolCalls: int = 0
    perTool: list[ToolStats] = Field(default_factory=list)
    repeatOffenders: RepeatOffenders = Field(default_factory=RepeatOffenders)


# ── Batch runs ──────────────────────────────────────────────────────

class BatchRunStart(BaseModel):
    name: Optional[str] = None
    batchId: str
    prompts: list[str] = Field(default_factory=list)
    runsPerPrompt: float = 1
    requestedRuns: Optional[float] = None
    delayMs: float = 0
    restoreBaseline: bool = False
    tags: Optional[list[str]] = None
    startedAt: Optional[int] = None


class BatchRunResultUpdate(BaseModel):
    finishedAt: Optional[int] = None
    successCount: float = 0
    failureCount: float = 0
    status: Optional[str] = None


class BatchRunRecord(BaseModel):
    batchRunId: int
    name: Optional[str] = None
    batchId: str
    prompts: list[str] = Field(default_factory=list)
    promptCount: int = 0
    totalRuns: int = 0
    runsPerPrompt: int = 1
    delayMs: int = 0
    restoreBaseline: bool = False
    tags: list[str] = Field(default_factory=list)
    startedAt: int
    finishedAt: Optional[int] = None
    successCount: int = 0
    failureCount: int = 0
    status: str = "running"
    createdAt: Optional[int] = None
    updatedAt: Optional[int] = None


class BatchRunMutationResult(BaseModel):
    ok: bool
    error: Optional[str] = None  # "not_found"
    batchRunId: Optional[int] = None
