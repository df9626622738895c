from __future__ import annotations

import json
import logging
import re
from typing import Any

from json_repair import repair_json

TIMESTAMP_RANGE = re.compile(r"\(?\s*(\d+):(\d{1,2})\s*[-–]\s*(\d+):(\d{1,2})\s*\)?")


def extract_json_block(text: str) -> str:
    """Return the JSON array or object embedded in a model response.

    Strips fenced code blocks and surrounding chatter. Whichever bracket
    opens first decides whether an array or an object is isolated.
    """
    candidate = text.strip()
    if candidate.startswith("```"):
        lines = candidate.splitlines()
        if len(lines) >= 2 and lines[0].startswith("```"):
            closing_index = len(lines) - 1 if lines[-1].startswith("```") else len(lines)
            candidate = "\n".join(lines[1:closing_index])
    starts = [index for index in (candidate.find("["), candidate.find("{")) if index != -1]
    if not starts:
        return candidate
    start = min(starts)
    closer = "]" if candidate[start] == "[" else "}"
    end = candidate.rfind(closer)
    if end >= start:
        return candidate[start : end + 1]
    return candidate


def load_json_with_repair(
    raw: str,
    *,
    logger: logging.Logger,
    repair_log_level: int = logging.WARNING,
) -> Any:
    """Best-effort JSON loader that optionally repairs malformed payloads."""
    cleaned = extract_json_block(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.log(
            repair_log_level,
            "Primary JSON parse failed, attempting repair: %s",
            exc,
        )
        try:
            repaired = repair_json(cleaned)
            return json.loads(repaired)
        except Exception as repair_exc:
            logger.error("JSON repair failed: %s", repair_exc)
            raise exc from repair_exc


def duration_from_timestamps(text: str) -> int | None:
    """Seconds between the first ``(m:ss - m:ss)`` range in ``text``, if any."""
    match = TIMESTAMP_RANGE.search(text or "")
    if not match:
        return None
    start_min, start_sec, end_min, end_sec = (int(group) for group in match.groups())
    seconds = (end_min * 60 + end_sec) - (start_min * 60 + start_sec)
    return seconds if seconds > 0 else None
