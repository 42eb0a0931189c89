"""Server-sent-events line parsing."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

DONE = "[DONE]"


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line.

    Comment lines (``: keep-alive``), ``event:``/``id:`` lines and blank
    separators are skipped.
    """
    async for raw in lines:
        line = raw.strip()
        if not line or line.startswith(":"):
            continue
        if not line.startswith("data:"):
            continue
        yield line[5:].strip()


def parse_json_payload(data: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE payload: %.200s", data)
        return None
    return payload if isinstance(payload, dict) else None
