"""Observability helpers."""

from agentlens.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_ingestion_failure,
    record_tool_result,
    record_token_cost,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_ingestion_failure",
    "record_tool_result",
    "record_token_cost",
]
