"""Exception types raised inside the fusion engine."""


class FusionError(Exception):
    """Base class for engine errors."""


class InvalidInputError(FusionError, ValueError):
    """A raw tick or trade carries a malformed field."""

    def __init__(self, field_name: str, value, reason: str = "invalid"):
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"{field_name}={value!r}: {reason}")


class PersistenceError(FusionError):
    """Reading or writing the persistence store failed."""


class ConfigError(FusionError, ValueError):
    """Configuration is inconsistent."""
