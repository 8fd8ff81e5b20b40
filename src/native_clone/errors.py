"""Custom error types for native_clone."""


class NativeCloneError(Exception):
    """Base class for all native_clone errors."""


class NoNativeImplementationError(NativeCloneError):
    """Raised when no native clone strategy was selected for a call mode."""

    def __init__(self, message: str = "no native structured clone implementation found") -> None:
        """Initialize the error with the standard message.

        :param message: Error message.
        """
        super().__init__(message)


class UnsupportedOperationError(NativeCloneError):
    """Raised when a strategy is asked for an operation it cannot perform."""

    strategy_name: str
    operation: str

    def __init__(self, strategy_name: str, operation: str) -> None:
        """Initialize an unsupported-operation error.

        :param strategy_name: Name of the strategy that refused the call.
        :param operation: Name of the refused operation.
        """
        self.strategy_name = strategy_name
        self.operation = operation
        super().__init__(f"Strategy {strategy_name!r} does not support {operation}")


class NativeCloneProtocolError(NativeCloneError):
    """Raised for malformed frames on a clone channel."""
