# services/stats_service.py
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.models.orm.assignment import AssignmentORM
from app.models.schemas.stats import ExperimentStatsModel, VariantStatsModel
from app.repositories.assignment_repo import AssignmentRepository
from app.repositories.experiment_repo import ExperimentRepository


def _conversion_rate(conversions: int, exposures: int) -> float:
    return conversions / exposures if exposures else 0.0


def _rollup(assignments: list[AssignmentORM]) -> tuple[int, int, int, float]:
    """(assignments, exposures, conversions, total conversion value)"""
    exposures = sum(1 for a in assignments if a.exposure_count > 0)
    conversions = sum(1 for a in assignments if a.converted_at is not None)
    total_value = sum(a.conversion_value or 0.0 for a in assignments)
    return len(assignments), exposures, conversions, float(total_value)


class StatsService:
    def __init__(self, db: Session):
        self.experiment_repo = ExperimentRepository(db)
        self.assignment_repo = AssignmentRepository(db)

    def get_experiment_stats(self, workspace_id: str, experiment_id: str) -> ExperimentStatsModel:
        """
        Rolls up assignment, exposure and conversion counts per variant and for
        the whole experiment.

        All assignments are read with a single query so every figure comes
        from the same snapshot.
        """
        experiment = self.experiment_repo.get_experiment(workspace_id, experiment_id)

        if not experiment:
            raise NotFoundError(f"Experiment {experiment_id} not found")

        assignments = self.assignment_repo.get_assignments_for_experiment(experiment_id)

        # lookup table
        by_variant: dict[str, list[AssignmentORM]] = {
            variant.variant_id: [] for variant in experiment.variants
        }
        for assignment in assignments:
            by_variant.setdefault(assignment.variant_id, []).append(assignment)

        variant_stats = []
        for variant in experiment.variants:
            count, exposures, conversions, total_value = _rollup(by_variant[variant.variant_id])
            variant_stats.append(
                VariantStatsModel(
                    variant_id=variant.variant_id,
                    variant_key=variant.key,
                    is_control=variant.is_control,
                    assignments=count,
                    exposures=exposures,
                    conversions=conversions,
                    conversion_rate=_conversion_rate(conversions, exposures),
                    total_conversion_value=total_value,
                )
            )

        total_assignments, total_exposures, total_conversions, total_value = _rollup(assignments)

        return ExperimentStatsModel(
            experiment_id=experiment_id,
            total_assignments=total_assignments,
            total_exposures=total_exposures,
            total_conversions=total_conversions,
            conversion_rate=_conversion_rate(total_conversions, total_exposures),
            total_conversion_value=total_value,
            variant_stats=variant_stats,
        )
