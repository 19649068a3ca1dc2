class ExperimentServiceError(Exception):
    """Base class for errors the experiment services surface to callers."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ExperimentServiceError):
    """Unknown experiment, variant or override target."""


class InvalidStateError(ExperimentServiceError):
    """A client-correctable request that the current state does not allow."""


class ConflictError(InvalidStateError):
    """Duplicate experiment key within a workspace or variant key within an experiment."""


class SubjectRequiredError(ExperimentServiceError):
    """Decision, override or conversion request carrying no subject identifier."""
