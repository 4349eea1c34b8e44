"""Exception hierarchy for the reconciliation pipeline."""


class ReconciliationError(Exception):
    """Base class for pipeline errors."""

    pass


class ExtractionFailure(ReconciliationError):
    """Raised when price/brand/model cannot be determined from listing text."""

    pass


class SourceFetchError(ReconciliationError):
    """Raised by a source adapter when listings cannot be fetched."""

    def __init__(self, source: str, message: str, retryable: bool = True):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.retryable = retryable


class PersistenceConflict(ReconciliationError):
    """Raised when a write collides with an existing row and cannot be merged."""

    pass


class FatalOrchestratorError(ReconciliationError):
    """Aborts an aggregation run."""

    pass


class LockUnavailableError(FatalOrchestratorError):
    """Another aggregation run holds the run lock."""

    pass


class CatalogLoadError(FatalOrchestratorError):
    """The curated catalog could not be loaded."""

    pass


class RunCancelled(FatalOrchestratorError):
    """The run was cancelled between phases."""

    pass
