"""Markers embedded in free-text descriptions.

Two conventions live here and nowhere else:

* the ``[Tracker Task]`` YAML block that links an internal task to its
  external tracker row (the store has no secondary index to hold a real
  foreign key), and
* the calendar marker plus header lines written into exported event
  descriptions.
"""

from __future__ import annotations

import re
from typing import Any

import yaml

TRACKER_BLOCK_START = "[Tracker Task]"
TRACKER_BLOCK_END = "[/Tracker Task]"
TRACKER_BLOCK_PATTERN = re.compile(r"\[Tracker Task\]\s*\n(.*?)\n\[/Tracker Task\]", re.DOTALL)

CALENDAR_MARKER = "[ROUTINE_APP_SYNC]"
EVENT_TITLE_PREFIX = "[Task] "
_EVENT_ID_LINE = re.compile(r"^ID:\s*(\S+)\s*$", re.MULTILINE)
_EVENT_PRIORITY_LINE = re.compile(r"^Priority:\s*\S*\s*$", re.MULTILINE)


def encode_tracker_ref(external_id: str, url: str = "") -> str:
    payload: dict[str, Any] = {"id": str(external_id)}
    if url:
        payload["url"] = str(url)
    yaml_content = yaml.safe_dump(
        payload,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    ).strip()
    return f"{TRACKER_BLOCK_START}\n{yaml_content}\n{TRACKER_BLOCK_END}"


def parse_tracker_ref(description: str) -> str | None:
    """Return the external id linked from ``description``, if any."""
    if not description:
        return None
    match = TRACKER_BLOCK_PATTERN.search(description)
    if not match:
        return None
    try:
        payload = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError:
        return None
    if not isinstance(payload, dict):
        return None
    external_id = str(payload.get("id") or "").strip()
    return external_id or None


def upsert_tracker_ref(description: str, external_id: str, url: str = "") -> str:
    block = encode_tracker_ref(external_id, url)
    if not description:
        return block
    if TRACKER_BLOCK_PATTERN.search(description):
        return TRACKER_BLOCK_PATTERN.sub(lambda _: block, description).strip()
    return f"{description.rstrip()}\n\n{block}".strip()


def has_calendar_marker(description: str) -> bool:
    return CALENDAR_MARKER in (description or "")


def build_event_text(task_id: str, title: str, priority: str, description: str) -> tuple[str, str]:
    summary = f"{EVENT_TITLE_PREFIX}{title}"
    lines = [f"ID: {task_id}", f"Priority: {priority or 'normal'}"]
    body = "\n".join(lines)
    if description:
        body += "\n\n" + description.strip()
    body += "\n\n" + CALENDAR_MARKER
    return summary, body


def strip_event_text(summary: str, description: str) -> tuple[str, str]:
    """Undo ``build_event_text`` so re-imports do not accumulate headers."""
    title = summary or ""
    if title.startswith(EVENT_TITLE_PREFIX):
        title = title[len(EVENT_TITLE_PREFIX):]
    body = (description or "").replace(CALENDAR_MARKER, "")
    if CALENDAR_MARKER in (description or ""):
        body = _EVENT_ID_LINE.sub("", body, count=1)
        body = _EVENT_PRIORITY_LINE.sub("", body, count=1)
    return title.strip(), body.strip()
