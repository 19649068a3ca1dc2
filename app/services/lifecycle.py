import enum

from app.core.errors import InvalidStateError
from app.models.orm.experiment import ExperimentStatus


class ExperimentAction(str, enum.Enum):
    START = "start"
    PAUSE = "pause"
    CONCLUDE = "conclude"
    ARCHIVE = "archive"


# action -> (statuses it may be applied from, resulting status); None means any
TRANSITIONS: dict[ExperimentAction, tuple[frozenset | None, ExperimentStatus]] = {
    ExperimentAction.START: (
        frozenset({ExperimentStatus.DRAFT, ExperimentStatus.PAUSED}),
        ExperimentStatus.RUNNING,
    ),
    ExperimentAction.PAUSE: (
        frozenset({ExperimentStatus.RUNNING}),
        ExperimentStatus.PAUSED,
    ),
    ExperimentAction.CONCLUDE: (
        frozenset({ExperimentStatus.RUNNING, ExperimentStatus.PAUSED}),
        ExperimentStatus.CONCLUDED,
    ),
    ExperimentAction.ARCHIVE: (None, ExperimentStatus.ARCHIVED),
}


def next_status(current: ExperimentStatus, action: ExperimentAction) -> ExperimentStatus:
    """Returns the status ``action`` moves an experiment to, or raises InvalidStateError."""
    allowed_from, target = TRANSITIONS[action]
    if allowed_from is not None and current not in allowed_from:
        raise InvalidStateError(
            f"Cannot {action.value} experiment in status '{ExperimentStatus(current).value}'"
        )
    return target
