"""
Error kinds raised by the A/B testing engine.
"""


class ABTestError(Exception):
    """Base class for A/B testing engine errors."""


class InvalidConfiguration(ABTestError, ValueError):
    """Malformed test definition: traffic split, arm set or control arm."""


class InvalidStateTransition(ABTestError):
    """Lifecycle operation not allowed from the test's current status."""

    def __init__(self, test_id, current_status, operation: str):
        self.test_id = test_id
        self.current_status = current_status
        self.operation = operation
        status_value = getattr(current_status, "value", current_status)
        super().__init__(
            f"Cannot {operation} A/B test {test_id} while it is {status_value}"
        )


class UnknownTestOrArm(ABTestError, LookupError):
    """Reference to a test or arm that does not exist."""


class ABTestNotFound(UnknownTestOrArm):
    """Lifecycle operation on a test id that does not exist."""

    def __init__(self, test_id):
        self.test_id = test_id
        super().__init__(f"A/B test {test_id} not found")
