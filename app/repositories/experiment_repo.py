import logging
import uuid
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.core.errors import ConflictError
from app.models.orm.assignment import AssignmentORM
from app.models.orm.experiment import (
    ExperimentORM,
    ExperimentStatus,
    ExperimentType,
    VariantORM,
)
from app.models.schemas.experiment import ExperimentCreateModel, VariantCreateModel

logger = logging.getLogger(__name__)


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_experiment(
        self, workspace_id: str, experiment_data: ExperimentCreateModel
    ) -> ExperimentORM:
        """
        Creates a new experiment in draft status.

        Raises:
            ConflictError: the key is already taken within the workspace
                (also covers a concurrent create losing the unique-constraint race).
        """
        experiment_dict = experiment_data.model_dump(exclude={"metadata"})
        db_experiment = ExperimentORM(
            experiment_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            status=ExperimentStatus.DRAFT,
            metadata_json=experiment_data.metadata,
            **experiment_dict,
        )
        self.db.add(db_experiment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(
                f"Experiment with key '{experiment_data.key}' already exists"
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while creating experiment %s", experiment_data.key)
            raise

        self.db.refresh(db_experiment)
        return db_experiment

    def get_experiment(self, workspace_id: str, experiment_id: str) -> ExperimentORM | None:
        """
        Fetches a single Experiment by id, scoped to the workspace, with its
        variants loaded in one extra query.
        """
        stmt = (
            select(ExperimentORM)
            .where(
                ExperimentORM.experiment_id == experiment_id,
                ExperimentORM.workspace_id == workspace_id,
            )
            .options(selectinload(ExperimentORM.variants))
        )
        return self.db.scalars(stmt).one_or_none()

    def get_experiment_by_key(self, workspace_id: str, key: str) -> ExperimentORM | None:
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.workspace_id == workspace_id, ExperimentORM.key == key)
            .options(selectinload(ExperimentORM.variants))
        )
        return self.db.scalars(stmt).one_or_none()

    def list_experiments(
        self,
        workspace_id: str,
        status: Optional[ExperimentStatus] = None,
        experiment_type: Optional[ExperimentType] = None,
        include_archived: bool = False,
    ) -> list[ExperimentORM]:
        """Newest first. Archived experiments only appear when asked for."""
        stmt = select(ExperimentORM).where(ExperimentORM.workspace_id == workspace_id)

        if status is not None:
            stmt = stmt.where(ExperimentORM.status == status)
        elif not include_archived:
            stmt = stmt.where(ExperimentORM.status != ExperimentStatus.ARCHIVED)

        if experiment_type is not None:
            stmt = stmt.where(ExperimentORM.type == experiment_type)

        stmt = stmt.options(selectinload(ExperimentORM.variants)).order_by(
            ExperimentORM.created_at.desc()
        )
        return list(self.db.scalars(stmt).all())

    def save(self, experiment: ExperimentORM) -> ExperimentORM:
        """Commits pending changes on an experiment (or one of its variants)."""
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"Update violates a uniqueness rule: {e.orig}")
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while saving experiment %s", experiment.experiment_id)
            raise

        self.db.refresh(experiment)
        return experiment

    # --- Variants ---

    def add_variant(
        self, experiment: ExperimentORM, variant_data: VariantCreateModel
    ) -> VariantORM:
        next_position = self.db.scalar(
            select(func.coalesce(func.max(VariantORM.position), -1) + 1).where(
                VariantORM.experiment_id == experiment.experiment_id
            )
        )
        db_variant = VariantORM(
            variant_id=str(uuid.uuid4()),
            experiment_id=experiment.experiment_id,
            position=next_position,
            **variant_data.model_dump(),
        )
        self.db.add(db_variant)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Variant with key '{variant_data.key}' already exists")
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "Database error while adding variant to experiment %s",
                experiment.experiment_id,
            )
            raise

        self.db.refresh(db_variant)
        self.db.expire(experiment, ["variants"])
        return db_variant

    def delete_variant(self, experiment: ExperimentORM, variant: VariantORM) -> None:
        """Deletes a variant along with any manual overrides pointing at it."""
        try:
            self.db.execute(
                delete(AssignmentORM).where(AssignmentORM.variant_id == variant.variant_id)
            )
            experiment.variants.remove(variant)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while deleting variant %s", variant.variant_id)
            raise
