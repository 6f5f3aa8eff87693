"""
Engine errors.

    - ValidationError: bad item parameters or a malformed response. Surfaced
      to the caller as a configuration/input error.
    - EstimationError: numeric instability inside an ability update. Caught by
      the estimator and reported, never fatal.
    - PersistenceError: a load/save against the store failed. Logged and
      reported, never fatal to the in-memory session.

Running out of items is not an error: the engine returns EndOfPool.
"""


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError, ValueError):
    """Input rejected before any state was touched."""


class EstimationError(EngineError):
    """An ability update produced a non-finite value."""

    def __init__(self, skill_id: str, message: str):
        super().__init__(f"{skill_id}: {message}")
        self.skill_id = skill_id


class PersistenceError(EngineError):
    """The persistence collaborator could not complete a call."""

    def __init__(self, operation: str, cause: Exception = None):
        message = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause
