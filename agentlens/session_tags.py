"""Session title + tag storage codec.

A session's custom title and its free-form tags share one ordered string list
in storage:

    ["title:Nightly run", "tag:regression", "tag:Flaky"]

Rows written before the prefixes existed hold bare strings. The first bare
string is read as the title (unless a ``title:`` entry already set one) and
every later bare string as a tag. Tags compare case-insensitively; the first
spelling seen is kept.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

TITLE_PREFIX = "title:"
TAG_PREFIX = "tag:"


@dataclass
class SessionLabels:
    title: str | None = None
    tags: list[str] = field(default_factory=list)

    def has_tag(self, tag: str) -> bool:
        needle = tag.lower()
        return any(existing.lower() == needle for existing in self.tags)


def normalize_tag_value(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def dedupe_preserve_order(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def decode_session_tags(stored: Any) -> SessionLabels:
    entries = stored if isinstance(stored, list) else []
    title: str | None = None
    tags: list[str] = []
    consumed_legacy_title = False

    for raw in entries:
        if not isinstance(raw, str):
            continue

        if raw.startswith(TITLE_PREFIX):
            value = normalize_tag_value(raw[len(TITLE_PREFIX):])
            if value:
                title = value
            continue

        if raw.startswith(TAG_PREFIX):
            value = normalize_tag_value(raw[len(TAG_PREFIX):])
            if value:
                tags.append(value)
            continue

        value = normalize_tag_value(raw)
        if not value:
            continue
        if not consumed_legacy_title and not title:
            title = value
            consumed_legacy_title = True
        else:
            tags.append(value)

    return SessionLabels(title=title, tags=dedupe_preserve_order(tags))


def encode_session_tags(title: str | None, tags: list[str]) -> list[str] | None:
    """Serialize title + tags; returns ``None`` rather than an empty list."""
    cleaned = dedupe_preserve_order([tag.strip() for tag in tags if tag and tag.strip()])
    result: list[str] = []
    if title:
        result.append(f"{TITLE_PREFIX}{title}")
    result.extend(f"{TAG_PREFIX}{tag}" for tag in cleaned)
    return result or None
