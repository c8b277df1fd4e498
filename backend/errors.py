MAX_MESSAGE_LENGTH = 500


class IngestionError(Exception):
    """Base class for pipeline errors."""


class ParseError(IngestionError):
    """Malformed or unreadable source file. Never retried."""


class UnsupportedFileTypeError(ParseError):
    pass


class SchemaMappingError(IngestionError):
    pass


class TransientIOError(IngestionError):
    """Timeout, rate limit or temporary outage; retried with backoff"""


class TaskTimeoutError(TransientIOError):
    pass


class WarehouseLoadError(IngestionError):
    """The warehouse load job reported errors."""


class ReconciliationSkipped(IngestionError):
    """The warehouse table already holds rows; nothing to reload."""

    def __init__(self, row_count):
        super().__init__(f'Table already has {row_count} rows')
        self.row_count = row_count


class DatasetNotFoundError(IngestionError):
    pass


class SourceFileMissingError(IngestionError):
    pass


class WarehouseTableMissingError(IngestionError):
    pass


class DuplicateJobError(IngestionError):
    """A job of the same type is already active for the dataset."""


class WarehouseStageError(IngestionError):
    """The warehouse step failed after schema metadata was persisted."""

    def __init__(self, cause, outcome):
        super().__init__(str(cause))
        self.cause = cause
        self.outcome = outcome


RETRYABLE_ERRORS = (TransientIOError, WarehouseLoadError)


def is_retryable(error):
    if isinstance(error, WarehouseStageError):
        error = error.cause
    return isinstance(error, RETRYABLE_ERRORS)


def short_message(error):
    """One-line, bounded description of an error for user-facing fields."""
    if isinstance(error, WarehouseStageError):
        error = error.cause
    text = str(error).strip() or error.__class__.__name__
    text = ' '.join(text.split())
    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH - 3] + '...'
    return text
