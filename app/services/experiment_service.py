# services/experiment_service.py
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import ConflictError, InvalidStateError, NotFoundError
from app.models.orm.experiment import (
    ExperimentORM,
    ExperimentStatus,
    ExperimentType,
    VariantORM,
)
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentUpdateModel,
    VariantCreateModel,
    VariantUpdateModel,
)
from app.repositories.experiment_repo import ExperimentRepository
from app.services.lifecycle import ExperimentAction, next_status

logger = logging.getLogger(__name__)

MIN_VARIANTS_TO_START = 2

# Columns that cannot be cleared; an explicit null in a partial update is ignored
_REQUIRED_EXPERIMENT_FIELDS = {"name", "traffic_allocation", "targeting_rules"}
_REQUIRED_VARIANT_FIELDS = {"name", "weight", "config"}


class ExperimentService:
    """Owns experiment and variant state: CRUD plus the status state machine."""

    def __init__(self, db: Session):
        self.experiment_repo = ExperimentRepository(db)
        self.db = db

    def create_experiment(
        self, workspace_id: str, experiment_data: ExperimentCreateModel
    ) -> ExperimentORM:
        if self.experiment_repo.get_experiment_by_key(workspace_id, experiment_data.key):
            raise ConflictError(f"Experiment with key '{experiment_data.key}' already exists")

        experiment = self.experiment_repo.create_experiment(workspace_id, experiment_data)
        logger.info(
            "Created experiment %s (%s) in workspace %s",
            experiment.key,
            experiment.experiment_id,
            workspace_id,
        )
        return experiment

    def get_experiment(self, workspace_id: str, experiment_id: str) -> ExperimentORM:
        experiment = self.experiment_repo.get_experiment(workspace_id, experiment_id)
        if not experiment:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def get_experiment_by_key(self, workspace_id: str, key: str) -> ExperimentORM:
        experiment = self.experiment_repo.get_experiment_by_key(workspace_id, key)
        if not experiment:
            raise NotFoundError(f"Experiment with key '{key}' not found")
        return experiment

    def list_experiments(
        self,
        workspace_id: str,
        status: Optional[ExperimentStatus] = None,
        experiment_type: Optional[ExperimentType] = None,
        include_archived: bool = False,
    ) -> list[ExperimentORM]:
        return self.experiment_repo.list_experiments(
            workspace_id,
            status=status,
            experiment_type=experiment_type,
            include_archived=include_archived,
        )

    def update_experiment(
        self, workspace_id: str, experiment_id: str, updates: ExperimentUpdateModel
    ) -> ExperimentORM:
        """Applies only the fields the caller explicitly sent."""
        experiment = self.get_experiment(workspace_id, experiment_id)

        changes = updates.model_dump(exclude_unset=True)
        if "metadata" in changes:
            experiment.metadata_json = changes.pop("metadata") or {}
        for field, value in changes.items():
            if value is None and field in _REQUIRED_EXPERIMENT_FIELDS:
                continue
            setattr(experiment, field, value)

        return self.experiment_repo.save(experiment)

    # --- Lifecycle ---

    def _set_status(self, experiment: ExperimentORM, target: ExperimentStatus) -> None:
        logger.info(
            "Experiment %s: %s -> %s",
            experiment.key,
            ExperimentStatus(experiment.status).value,
            target.value,
        )
        experiment.status = target

    def start_experiment(self, workspace_id: str, experiment_id: str) -> ExperimentORM:
        experiment = self.get_experiment(workspace_id, experiment_id)
        target = next_status(experiment.status, ExperimentAction.START)

        if len(experiment.variants) < MIN_VARIANTS_TO_START:
            raise InvalidStateError(
                f"Experiment must have at least {MIN_VARIANTS_TO_START} variants to start"
            )

        self._set_status(experiment, target)
        # Resuming a paused experiment keeps its original start
        if experiment.start_at is None:
            experiment.start_at = datetime.utcnow()
        return self.experiment_repo.save(experiment)

    def pause_experiment(self, workspace_id: str, experiment_id: str) -> ExperimentORM:
        experiment = self.get_experiment(workspace_id, experiment_id)
        self._set_status(experiment, next_status(experiment.status, ExperimentAction.PAUSE))
        return self.experiment_repo.save(experiment)

    def conclude_experiment(
        self,
        workspace_id: str,
        experiment_id: str,
        winning_variant_id: Optional[str] = None,
    ) -> ExperimentORM:
        """
        Concludes the experiment. With a winner, every later assignment request
        is answered with that variant; persisted assignments are left as they are.
        """
        experiment = self.get_experiment(workspace_id, experiment_id)
        target = next_status(experiment.status, ExperimentAction.CONCLUDE)

        if winning_variant_id and experiment.get_variant(winning_variant_id) is None:
            raise InvalidStateError(
                f"Variant {winning_variant_id} not found in experiment"
            )

        now = datetime.utcnow()
        self._set_status(experiment, target)
        experiment.winning_variant_id = winning_variant_id
        experiment.concluded_at = now
        experiment.end_at = experiment.end_at or now
        return self.experiment_repo.save(experiment)

    def archive_experiment(self, workspace_id: str, experiment_id: str) -> ExperimentORM:
        experiment = self.get_experiment(workspace_id, experiment_id)
        self._set_status(experiment, next_status(experiment.status, ExperimentAction.ARCHIVE))
        return self.experiment_repo.save(experiment)

    # --- Variants ---

    def add_variant(
        self, workspace_id: str, experiment_id: str, variant_data: VariantCreateModel
    ) -> VariantORM:
        experiment = self.get_experiment(workspace_id, experiment_id)

        if experiment.status != ExperimentStatus.DRAFT:
            raise InvalidStateError("Cannot add variants to a non-draft experiment")

        if any(v.key == variant_data.key for v in experiment.variants):
            raise ConflictError(f"Variant with key '{variant_data.key}' already exists")

        return self.experiment_repo.add_variant(experiment, variant_data)

    def _get_variant(self, experiment: ExperimentORM, variant_id: str) -> VariantORM:
        variant = experiment.get_variant(variant_id)
        if variant is None:
            raise NotFoundError(f"Variant {variant_id} not found")
        return variant

    def update_variant(
        self,
        workspace_id: str,
        experiment_id: str,
        variant_id: str,
        updates: VariantUpdateModel,
    ) -> VariantORM:
        """
        Allowed in any status. A weight change only moves subjects that have
        no assignment yet; persisted assignments keep their variant.
        """
        experiment = self.get_experiment(workspace_id, experiment_id)
        variant = self._get_variant(experiment, variant_id)

        for field, value in updates.model_dump(exclude_unset=True).items():
            if value is None and field in _REQUIRED_VARIANT_FIELDS:
                continue
            setattr(variant, field, value)

        self.experiment_repo.save(experiment)
        return variant

    def delete_variant(self, workspace_id: str, experiment_id: str, variant_id: str) -> None:
        experiment = self.get_experiment(workspace_id, experiment_id)

        if experiment.status != ExperimentStatus.DRAFT:
            raise InvalidStateError("Cannot delete variants from a non-draft experiment")

        variant = self._get_variant(experiment, variant_id)
        self.experiment_repo.delete_variant(experiment, variant)
        logger.info("Deleted variant %s from experiment %s", variant_id, experiment.key)
