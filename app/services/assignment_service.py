# services/assignment_service.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, SubjectRequiredError
from app.models.orm.experiment import ExperimentORM, ExperimentStatus, VariantORM
from app.models.schemas.assignment import DecisionModel, Subject
from app.repositories.assignment_repo import AssignmentRepository
from app.repositories.experiment_repo import ExperimentRepository
from app.services.bucketing import (
    is_in_traffic_allocation,
    matches_targeting,
    select_variant,
)

logger = logging.getLogger(__name__)

# Decisions served from a concluded experiment's winner have no assignment row
CONCLUDED_ASSIGNMENT_ID = "concluded"


def _to_decision(
    experiment_key: str, variant: VariantORM, assignment_id: str, is_new: bool
) -> DecisionModel:
    return DecisionModel(
        experiment_key=experiment_key,
        variant_key=variant.key,
        variant_config=variant.config or {},
        is_control=variant.is_control,
        assignment_id=assignment_id,
        is_new_assignment=is_new,
    )


class AssignmentService:
    """Get-or-create assignments, exposure tracking and manual overrides."""

    def __init__(self, db: Session):
        self.assignment_repo = AssignmentRepository(db)
        self.experiment_repo = ExperimentRepository(db)

    def get_assignment(
        self,
        workspace_id: str,
        experiment_key: str,
        subject: Subject,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[DecisionModel]:
        """
        Returns the subject's variant for an experiment, creating a persistent
        assignment on first exposure.

        None means "no decision": unknown or inactive experiment, targeting
        mismatch or traffic exclusion. A subject without any identifier is a
        caller error.
        """
        experiment = self.experiment_repo.get_experiment_by_key(workspace_id, experiment_key)
        if not experiment:
            return None

        return self._decide(workspace_id, experiment, subject, attributes)

    def _decide(
        self,
        workspace_id: str,
        experiment: ExperimentORM,
        subject: Subject,
        attributes: Optional[Dict[str, Any]],
    ) -> Optional[DecisionModel]:
        if experiment.status != ExperimentStatus.RUNNING:
            # A concluded experiment with a winner serves it to everyone
            if experiment.status == ExperimentStatus.CONCLUDED and experiment.winning_variant_id:
                winner = experiment.get_variant(experiment.winning_variant_id)
                if winner is not None:
                    return _to_decision(
                        experiment.key, winner, CONCLUDED_ASSIGNMENT_ID, is_new=False
                    )
            return None

        if not matches_targeting(experiment.targeting_rules, attributes):
            logger.debug("Targeting mismatch for experiment %s", experiment.key)
            return None

        if not subject.has_identifier:
            raise SubjectRequiredError(
                "Must provide customer_id, session_id, or user_id for assignment"
            )

        if not is_in_traffic_allocation(
            experiment.key, experiment.traffic_allocation, subject.subject_id
        ):
            logger.debug(
                "Subject %s outside traffic allocation of %s",
                subject.subject_key,
                experiment.key,
            )
            return None

        existing = self.assignment_repo.find_for_subject(experiment.experiment_id, subject)
        if existing:
            self.assignment_repo.record_exposure(existing.assignment_id)
            return _to_decision(
                experiment.key, existing.variant, existing.assignment_id, is_new=False
            )

        variant = select_variant(experiment.variants, experiment.key, subject.subject_id)
        assignment, created = self.assignment_repo.create_if_absent(
            workspace_id, experiment.experiment_id, variant.variant_id, subject
        )
        if not created:
            # A concurrent request for the same subject committed first
            self.assignment_repo.record_exposure(assignment.assignment_id)
            return _to_decision(
                experiment.key, assignment.variant, assignment.assignment_id, is_new=False
            )

        logger.info(
            "Assigned %s to variant %s of experiment %s",
            subject.subject_key,
            variant.key,
            experiment.key,
        )
        return _to_decision(experiment.key, variant, assignment.assignment_id, is_new=True)

    def get_active_assignments(
        self,
        workspace_id: str,
        subject: Subject,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> list[DecisionModel]:
        """
        Evaluates every running experiment in the workspace for the subject.

        Each experiment goes through the same steps as get_assignment, so a
        subject without identifiers is only rejected once some experiment's
        targeting matches.
        """
        experiments = self.experiment_repo.list_experiments(
            workspace_id, status=ExperimentStatus.RUNNING
        )

        decisions = []
        for experiment in experiments:
            decision = self._decide(workspace_id, experiment, subject, attributes)
            if decision is not None:
                decisions.append(decision)

        return decisions

    def override_assignment(
        self,
        workspace_id: str,
        experiment_id: str,
        variant_id: str,
        subject: Subject,
    ) -> DecisionModel:
        """
        Pins a subject to a variant, bypassing targeting and traffic allocation.

        Existing assignments sharing any of the subject's identifiers are
        replaced; later lookups find the override first.
        """
        experiment = self.experiment_repo.get_experiment(workspace_id, experiment_id)
        if not experiment:
            raise NotFoundError(f"Experiment {experiment_id} not found")

        variant = experiment.get_variant(variant_id)
        if variant is None:
            raise NotFoundError(f"Variant {variant_id} not found")

        if not subject.has_identifier:
            raise SubjectRequiredError(
                "Must provide customer_id, session_id, or user_id for an override"
            )

        experiment_key = experiment.key
        assignment = self.assignment_repo.replace_with_override(
            workspace_id, experiment_id, variant_id, subject
        )
        logger.info(
            "Overrode %s to variant %s of experiment %s",
            subject.subject_key,
            variant.key,
            experiment_key,
        )
        return _to_decision(experiment_key, assignment.variant, assignment.assignment_id, is_new=True)
