from utils.retry_utils import RetryableError


class IntelligenceError(Exception):
    """Base class for all prospect intelligence errors."""
    pass


class InputValidationError(IntelligenceError):
    """Request is missing required identity fields or names an unknown analysis type or stage."""
    pass


class UpstreamUnavailable(IntelligenceError):
    """A signal source failed or timed out. Never fatal to an intelligence run."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class PersistenceFailure(IntelligenceError):
    """Workflow store or score cache could not be read or written."""
    pass


class ConcurrentModificationError(RetryableError):
    """Workflow state changed between load and compare-and-swap write."""

    def __init__(self, prospect_id: str, expected_version: int):
        self.prospect_id = prospect_id
        self.expected_version = expected_version
        super().__init__(f"Workflow for {prospect_id} is no longer at version {expected_version}")


class InvariantViolation(IntelligenceError):
    """A computed score or level fell outside its allowed range."""
    pass
