class PortalError(Exception):
    """Base class for errors surfaced to callers of the intake pipeline."""


class IntakeError(PortalError):
    """An upload could not be admitted (e.g. its content hash could not be computed)."""


class ParserError(PortalError):
    """The document parser failed to extract fields from a stored file."""


class QueueUnavailable(PortalError):
    """The processing queue is not accepting jobs."""


class NotFound(PortalError):
    pass


class NotEligible(PortalError):
    """A record is no longer in a state that allows the requested transition."""
