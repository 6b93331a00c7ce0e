"""
Exception hierarchy for session-handler.

Background work never lets these escape to the calling context: the
dispatcher converts them to error messages. They are raised directly only
for validation on the calling context and for registry faults.
"""


class SessionHandlerError(Exception):
    """Base class for all session-handler errors."""


class PipelineError(SessionHandlerError):
    """The pipeline description is malformed or uses unsupported stages."""


class EngineError(SessionHandlerError):
    """The point-cloud engine failed to build, query, serialize or extract."""


class SessionError(SessionHandlerError):
    """A session operation was called in the wrong lifecycle state."""


class ReadValidationError(SessionHandlerError):
    """Read parameters are invalid for the current session."""


class RegistryError(SessionHandlerError):
    """A read command could not be tracked by the command registry."""
