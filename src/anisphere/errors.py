"""Pipeline-level error types shared by the engine, pipeline and web layer."""


class PipelineError(Exception):
    """Base class for errors reported by pipeline operations."""

    pass


class NotFoundError(PipelineError):
    pass


class ConflictError(PipelineError):
    """Raised when work for a link or task is already in progress."""

    pass


class InvalidStateError(PipelineError):
    """Raised when a task is not in a status that allows the requested operation."""

    pass
