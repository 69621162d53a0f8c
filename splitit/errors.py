# splitit/errors.py


class SplitItError(Exception):
    """Base class for every error raised by the bill-splitting core."""


class ExtractionError(SplitItError):
    """The receipt could not be turned into usable bill data."""


class ValidationError(SplitItError):
    """A referential or precondition check failed."""


class WorkflowError(ValidationError):
    """A stage transition or stage-bound operation was attempted out of order."""
