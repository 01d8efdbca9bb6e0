"""Exception taxonomy shared across the router, IPC bus and approval flow."""

from __future__ import annotations


class ClawgateError(Exception):
    """Base class for all clawgate errors."""


class ChannelError(ClawgateError):
    """A send or typing call failed on a chat channel. Transient, never fatal."""


class AgentInvocationError(ClawgateError):
    """The agent sandbox returned an error or could not be reached.

    The triggering message is not advanced past and is retried next cycle.
    """


class IpcAuthorizationError(ClawgateError):
    """An IPC command tried to act outside its source group. Non-retryable."""

    def __init__(self, command: str, source_group: str, detail: str = "") -> None:
        self.command = command
        self.source_group = source_group
        self.detail = detail
        msg = f"Unauthorized {command} from {source_group}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class IpcValidationError(ClawgateError):
    """An IPC envelope could not be parsed into a known command."""


class InvalidTransitionError(ClawgateError):
    """A host-change request was moved along an edge the state machine forbids."""

    def __init__(self, request_id: str, current: str, target: str) -> None:
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"{request_id}: cannot move from {current} to {target}")


class FatalStartupError(ClawgateError):
    """A required external collaborator is missing. The process must exit."""
