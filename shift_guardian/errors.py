class ShiftGuardianError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(ShiftGuardianError):
    """Malformed input. Rejected before anything is persisted."""


class InvalidCoordinate(ValidationError):
    pass


class ShiftStateError(ShiftGuardianError):
    pass


class AlreadyOnShiftError(ShiftStateError):
    pass


class NotOnShiftError(ShiftStateError):
    pass


class NotFoundError(ShiftGuardianError):
    pass


class AlertNotActiveError(ShiftGuardianError):
    pass


class PersistenceError(ShiftGuardianError):
    """Transient store failure (timeout, lost connection). Safe to retry."""
