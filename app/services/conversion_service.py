# services/conversion_service.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.errors import SubjectRequiredError
from app.models.schemas.assignment import Subject
from app.repositories.assignment_repo import AssignmentRepository
from app.repositories.experiment_repo import ExperimentRepository

logger = logging.getLogger(__name__)


class ConversionService:
    def __init__(self, db: Session):
        """Initializes the service with repositories it needs."""
        self.experiment_repo = ExperimentRepository(db)
        # Conversions attach to the subject's existing assignment
        self.assignment_repo = AssignmentRepository(db)

    def record_conversion(
        self,
        workspace_id: str,
        experiment_key: str,
        subject: Subject,
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Records the first conversion for the subject's assignment.

        Returns False, without raising, when the experiment or the assignment
        does not exist or the assignment has already converted.
        """
        if not subject.has_identifier:
            raise SubjectRequiredError(
                "Must provide customer_id, session_id, or user_id for a conversion"
            )

        experiment = self.experiment_repo.get_experiment_by_key(workspace_id, experiment_key)
        if not experiment:
            logger.debug("Conversion for unknown experiment %s ignored", experiment_key)
            return False

        assignment = self.assignment_repo.find_for_subject(experiment.experiment_id, subject)
        if not assignment:
            logger.debug(
                "Conversion for unassigned subject %s in %s ignored",
                subject.subject_key,
                experiment_key,
            )
            return False

        if assignment.converted_at is not None:
            return False

        # Guarded by converted_at IS NULL, so a concurrent duplicate records nothing
        recorded = self.assignment_repo.mark_converted(
            assignment.assignment_id, value, metadata
        )
        if recorded:
            logger.info(
                "Recorded conversion for assignment %s in experiment %s",
                assignment.assignment_id,
                experiment_key,
            )
        return recorded
