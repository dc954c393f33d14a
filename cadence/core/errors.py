"""
Cadence exception hierarchy.

Every error in the engine inherits from CadenceError.
Each concern has its own error class for targeted catching.

Usage:
    try:
        await governor.schedule(request)
    except InvalidRuleError as e:
        # Malformed recurrence rule
    except ValidationError as e:
        # Any other rejected request
    except CadenceError as e:
        # Handle any Cadence error
"""


class CadenceError(Exception):
    """Base exception for all Cadence errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Layer 0: Core Errors ━━━


class ConfigError(CadenceError):
    """Configuration is invalid, missing, or malformed."""

    pass


class ValidationError(CadenceError):
    """A request, rule or policy was rejected before any state changed."""

    def __init__(
        self,
        message: str,
        field: str = "",
        details: dict | None = None,
    ):
        self.field = field
        super().__init__(message, details)


class InvalidRuleError(ValidationError):
    """A recurrence rule fails the expander's preconditions."""

    pass


# ━━━ Layer 1: Admission Errors ━━━


class CapacityExceededError(CadenceError):
    """
    A request produces more occurrences than the system cap.

    Never raised by schedule(): the partial result up to the cap is
    returned and this error travels in a capacity event instead.
    """

    def __init__(
        self,
        message: str,
        request_id: str = "",
        cap: int = 0,
        details: dict | None = None,
    ):
        self.request_id = request_id
        self.cap = cap
        super().__init__(message, details)


class DroppedOccurrenceError(CadenceError):
    """
    A deferred occurrence was evicted or expired before it could fire.

    Reported asynchronously to the owner; recoverable by re-requesting.
    """

    def __init__(
        self,
        message: str,
        request_id: str = "",
        identifier: str = "",
        reason: str = "",
        details: dict | None = None,
    ):
        self.request_id = request_id
        self.identifier = identifier
        self.reason = reason
        super().__init__(message, details)


class SubmissionError(CadenceError):
    """The submission sink failed to accept an admitted occurrence."""

    def __init__(
        self,
        message: str,
        sink: str = "",
        identifier: str = "",
        details: dict | None = None,
    ):
        self.sink = sink
        self.identifier = identifier
        super().__init__(message, details)
