"""Error taxonomy of the batch classification orchestrator.

Run-level errors (``Conflict``, ``InvalidTransition``, ``NotFound``) are raised
by the dispatcher and mapped to HTTP status codes by the routes. Item-level
errors never leave a worker: they are retried, recorded, or skipped.
"""


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class Conflict(OrchestratorError):
    """A run is already in a state that forbids the command (e.g. start while running)."""


class InvalidTransition(Conflict):
    """The requested state change is not legal from the current state."""

    def __init__(self, action: str, state: str) -> None:
        super().__init__(f"Cannot {action} analysis in status: {state}")
        self.action = action
        self.state = state


class NotFound(OrchestratorError):
    """A control command targeted a run without a status record."""


class TransientClassificationFailure(OrchestratorError):
    """Network, timeout or non-success response from the classifier or the label sink."""


class PermanentItemFailure(OrchestratorError):
    """An item exhausted its retries; it is recorded and the run continues."""

    def __init__(self, item_id: int, attempts: int, message: str) -> None:
        super().__init__(f"Item {item_id} failed after {attempts} attempts: {message}")
        self.item_id = item_id
        self.attempts = attempts
        self.message = message


class ParseFailure(OrchestratorError):
    """A stored queue entry or status record could not be decoded."""
