"""Custom exceptions for cardshop."""


class CardShopError(Exception):
    """Base exception for all cardshop errors."""

    pass


class ConfigError(CardShopError):
    """Raised when the runtime configuration is unusable."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid configuration for {name}: {reason}")


class StoreError(CardShopError):
    """Raised when a persistence backend fails.

    Wraps the driver exception so callers never see backend-specific errors.
    """

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store operation '{operation}' failed{detail}")
