class PalaverError(Exception):
    """Base class for errors raised by palaver."""


class TransportError(PalaverError):
    """The backend request failed: bad status, aborted stream or timeout.

    Args:
        message: Human-readable description, shown inline to the user.
        status_code: HTTP status when the backend answered, else ``None``.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CorrelationError(PalaverError):
    """A tool result could not be matched to a pending execution."""

    def __init__(self, tool_call_id: str | None):
        if tool_call_id:
            message = f"No pending tool call with id '{tool_call_id}'"
        else:
            message = "Tool result missing ID"
        super().__init__(message)
        self.tool_call_id = tool_call_id


class InvalidTransitionError(PalaverError, RuntimeError):
    """The conversation was asked to move between incompatible states."""


class ToolExecutionError(PalaverError):
    """Raised by host-side tools to report a failure back to the widget."""
