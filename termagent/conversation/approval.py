"""Bookkeeping for the approval that is pending (or was parked by an abort)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from termagent.agent.runner import Interruption, RunState


@dataclass
class PendingApprovalContext:
    # state/interruption are None for the synthetic max-turns prompt
    state: RunState | None
    interruption: Interruption | None
    emitted_command_ids: set[str] = field(default_factory=set)
    args_by_id: dict[str, Any] = field(default_factory=dict)
    is_max_turns_prompt: bool = False


class ApprovalState:
    """At most one pending approval and at most one aborted one.

    ``abort_pending`` parks the pending approval so the next user message
    can reject it before a new turn starts.
    """

    def __init__(self) -> None:
        self._pending: PendingApprovalContext | None = None
        self._aborted: PendingApprovalContext | None = None

    def get_pending(self) -> PendingApprovalContext | None:
        return self._pending

    def set_pending(self, context: PendingApprovalContext) -> None:
        self._pending = context

    def clear_pending(self) -> None:
        self._pending = None

    def abort_pending(self) -> bool:
        if self._pending is None:
            return False
        self._aborted = self._pending
        self._pending = None
        return True

    def consume_aborted(self) -> PendingApprovalContext | None:
        aborted, self._aborted = self._aborted, None
        return aborted

    def clear(self) -> None:
        self._pending = None
        self._aborted = None
