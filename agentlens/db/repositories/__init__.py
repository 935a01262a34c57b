"""Repository package for database access."""

from .batch_runs import SqliteBatchRunRepository
from .events import SqliteEventRepository
from .sessions import SqliteSessionRepository
from .steps import SqliteStepRepository
from .tool_calls import SqliteToolCallRepository

__all__ = [
    "SqliteBatchRunRepository",
    "SqliteEventRepository",
    "SqliteSessionRepository",
    "SqliteStepRepository",
    "SqliteToolCallRepository",
]
