"""Per-session conversation history keyed by continuation token.

Providers without server-side response chaining record each finished turn
under the new response id.  The next request names that id as its
``previous_response_id`` and the adapter replays the stored wire messages.

Stored lists are never mutated in place: a merge builds a new list, so a
history handed to one request can never change under a later turn.
"""

from __future__ import annotations

import copy
import logging
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 100

WireMessage = dict[str, Any]


class ConversationStore:
    """Ordered wire-message histories, LRU-evicted past ``max_entries``."""

    def __init__(self, max_entries: int = MAX_CONVERSATIONS) -> None:
        self._max_entries = max_entries
        self._histories: OrderedDict[str, tuple[WireMessage, ...]] = OrderedDict()
        self._parents: dict[str, str] = {}

    def __contains__(self, token: object) -> bool:
        return token in self._histories

    def __len__(self) -> int:
        return len(self._histories)

    def get(self, token: str | None) -> list[WireMessage]:
        """Copy of the history stored under *token* (empty if unknown)."""
        if not token or token not in self._histories:
            return []
        self._histories.move_to_end(token)
        return copy.deepcopy(list(self._histories[token]))

    def merge_turn(
        self,
        token: str,
        new_messages: list[WireMessage],
        assistant_reply: list[WireMessage],
        parent: str | None = None,
    ) -> list[WireMessage]:
        """Append a turn to the history under *token* and return the result.

        When *token* is new and *parent* is given, the parent's history is
        the starting point.
        """
        if token in self._histories:
            base = self._histories[token]
        elif parent and parent in self._histories:
            base = self._histories[parent]
        else:
            base = ()

        merged = (*base, *copy.deepcopy(new_messages), *copy.deepcopy(assistant_reply))
        self._histories[token] = merged
        self._histories.move_to_end(token)
        if parent and parent != token:
            self._parents[token] = parent

        while len(self._histories) > self._max_entries:
            evicted, _ = self._histories.popitem(last=False)
            self._parents.pop(evicted, None)
            logger.debug("Evicted conversation %s (LRU)", evicted)

        return copy.deepcopy(list(merged))

    def clear(self, token: str | None = None) -> None:
        """Forget *token* and every ancestor it was built from, or everything."""
        if token is None:
            self._histories.clear()
            self._parents.clear()
            return

        current: str | None = token
        seen: set[str] = set()
        while current and current not in seen:
            seen.add(current)
            self._histories.pop(current, None)
            current = self._parents.pop(current, None)
