"""Shared route dependency for the agent-metrics feature flag."""
from __future__ import annotations

from fastapi import HTTPException

from agentlens import config


def require_metrics_enabled() -> None:
    """Answer 404 on every agent-metrics route while the feature is switched off."""
    if not config.METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Not Found")
