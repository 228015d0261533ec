"""PermissionArbiter — policy and exactly-once resolution of tool approvals."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .errors import ChannelClosed
from .frames import Frame, PermissionDecision
from .types import PermissionMode, PermissionRequest, PermissionStatus

logger = logging.getLogger(__name__)

PLAN_MODE_REASON = "Plan mode is active: mutating tools are disabled"
DENIED_BY_USER = "Denied by user"

EDIT_TOOLS = frozenset({"Edit", "MultiEdit", "Write", "NotebookEdit"})
MUTATING_TOOLS = EDIT_TOOLS | {"Bash"}

# Input keys that identify what a tool acts on, in lookup order.
_RESOURCE_KEYS = ("file_path", "notebook_path", "path", "command", "pattern", "url")

# Resolved requests kept for duplicate detection; older ones are forgotten.
RESOLVED_LIMIT = 256


def is_edit_tool(tool_name: str) -> bool:
    return tool_name in EDIT_TOOLS


def is_mutating_tool(tool_name: str) -> bool:
    return tool_name in MUTATING_TOOLS


def request_signature(tool_name: str, tool_input: dict[str, Any]) -> tuple[str, str | None]:
    """The ``(tool, resource)`` pair an always-allow decision applies to."""
    for key in _RESOURCE_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return tool_name, value
    return tool_name, None


class PermissionArbiter:
    """Decide permission requests for one session.

    ``get_mode`` returns the session's current permission mode and ``send``
    delivers the outbound decision frame (it may raise ``ChannelClosed``).
    Requests the policy resolves on arrival are answered straight away and
    never enter :attr:`pending`.
    """

    def __init__(
        self,
        get_mode: Callable[[], PermissionMode],
        send: Callable[[Frame], None],
    ) -> None:
        self._get_mode = get_mode
        self._send = send
        self._pending: dict[str, PermissionRequest] = {}
        self._always_allowed: set[tuple[str, str | None]] = set()
        self.resolved: dict[str, PermissionRequest] = {}

    @property
    def pending(self) -> dict[str, PermissionRequest]:
        """Requests waiting for a user decision, keyed by request id."""
        return dict(self._pending)

    @property
    def always_allowed(self) -> frozenset[tuple[str, str | None]]:
        return frozenset(self._always_allowed)

    def request_received(self, request: PermissionRequest) -> PermissionStatus:
        """Register an inbound request, auto-resolving it where policy allows."""
        if request.request_id in self._pending or request.request_id in self.resolved:
            logger.warning("Duplicate permission request %s ignored", request.request_id)
            existing = self._pending.get(request.request_id) or self.resolved[request.request_id]
            return existing.status

        mode = self._get_mode()
        signature = request_signature(request.tool_name, request.input)

        if mode is PermissionMode.BYPASS:
            return self._auto(request, PermissionStatus.APPROVED, "bypass mode")
        if mode is PermissionMode.PLAN and is_mutating_tool(request.tool_name):
            return self._auto(request, PermissionStatus.DENIED, "plan mode", message=PLAN_MODE_REASON)
        if mode is PermissionMode.ACCEPT_EDITS and is_edit_tool(request.tool_name):
            return self._auto(request, PermissionStatus.APPROVED, "accept-edits mode")
        if signature in self._always_allowed:
            return self._auto(request, PermissionStatus.APPROVED, "always-allow rule")

        self._pending[request.request_id] = request
        logger.info("Permission request %s for %s is pending", request.request_id, request.tool_name)
        return PermissionStatus.PENDING

    def decide(self, request_id: str, decision: PermissionStatus | str) -> bool:
        """Resolve a pending request. Unknown or resolved ids are a no-op.

        Returns True if the request was pending and is now resolved.
        """
        status = PermissionStatus(decision)
        if status is PermissionStatus.PENDING:
            raise ValueError("a decision cannot be 'pending'")
        request = self._pending.pop(request_id, None)
        if request is None:
            logger.debug("Decision for unknown or resolved request %s ignored", request_id)
            return False

        if status is PermissionStatus.ALWAYS_ALLOW:
            self._always_allowed.add(request_signature(request.tool_name, request.input))
        message = DENIED_BY_USER if status is PermissionStatus.DENIED else None
        self._resolve(request, status, message=message)
        return True

    def clear(self) -> list[PermissionRequest]:
        """Drop every pending request (after interrupt or disconnect)."""
        dropped = list(self._pending.values())
        self._pending.clear()
        if dropped:
            logger.info("Cleared %d pending permission request(s)", len(dropped))
        return dropped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _auto(
        self,
        request: PermissionRequest,
        status: PermissionStatus,
        why: str,
        *,
        message: str | None = None,
    ) -> PermissionStatus:
        logger.info("Auto-%s %s (%s)", "approved" if status is not PermissionStatus.DENIED else "denied", request.tool_name, why)
        self._resolve(request, status, message=message)
        return status

    def _resolve(self, request: PermissionRequest, status: PermissionStatus, *, message: str | None) -> None:
        request.status = status
        self.resolved[request.request_id] = request
        while len(self.resolved) > RESOLVED_LIMIT:
            del self.resolved[next(iter(self.resolved))]
        if status is PermissionStatus.DENIED:
            frame = PermissionDecision(request_id=request.request_id, decision="deny", message=message)
        else:
            frame = PermissionDecision(
                request_id=request.request_id,
                decision="allow",
                updated_input=request.input,
            )
        try:
            self._send(frame)
        except ChannelClosed as e:
            logger.warning("Could not deliver decision for %s: %s", request.request_id, e)
