"""Tests for the experiment state machine and variant management."""

import pytest

from app.core.errors import ConflictError, InvalidStateError, NotFoundError
from app.models.orm.experiment import ExperimentStatus
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentUpdateModel,
    VariantCreateModel,
    VariantUpdateModel,
)
from app.services.experiment_service import ExperimentService
from app.services.lifecycle import ExperimentAction, next_status

from conftest import WORKSPACE_ID


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current, action, expected",
        [
            (ExperimentStatus.DRAFT, ExperimentAction.START, ExperimentStatus.RUNNING),
            (ExperimentStatus.PAUSED, ExperimentAction.START, ExperimentStatus.RUNNING),
            (ExperimentStatus.RUNNING, ExperimentAction.PAUSE, ExperimentStatus.PAUSED),
            (ExperimentStatus.RUNNING, ExperimentAction.CONCLUDE, ExperimentStatus.CONCLUDED),
            (ExperimentStatus.PAUSED, ExperimentAction.CONCLUDE, ExperimentStatus.CONCLUDED),
            (ExperimentStatus.CONCLUDED, ExperimentAction.ARCHIVE, ExperimentStatus.ARCHIVED),
            (ExperimentStatus.DRAFT, ExperimentAction.ARCHIVE, ExperimentStatus.ARCHIVED),
        ],
    )
    def test_allowed(self, current, action, expected):
        assert next_status(current, action) == expected

    @pytest.mark.parametrize(
        "current, action",
        [
            (ExperimentStatus.DRAFT, ExperimentAction.PAUSE),
            (ExperimentStatus.DRAFT, ExperimentAction.CONCLUDE),
            (ExperimentStatus.RUNNING, ExperimentAction.START),
            (ExperimentStatus.CONCLUDED, ExperimentAction.START),
            (ExperimentStatus.ARCHIVED, ExperimentAction.START),
            (ExperimentStatus.CONCLUDED, ExperimentAction.CONCLUDE),
            (ExperimentStatus.PAUSED, ExperimentAction.PAUSE),
        ],
    )
    def test_rejected(self, current, action):
        with pytest.raises(InvalidStateError, match=f"Cannot {action.value}"):
            next_status(current, action)


class TestExperimentLifecycle:
    def test_created_in_draft(self, make_experiment):
        experiment = make_experiment(start=False)
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.start_at is None
        assert experiment.traffic_allocation == 100
        assert experiment.targeting_rules == {}

    def test_duplicate_key_conflicts(self, db, make_experiment):
        make_experiment(key="dup", start=False)
        with pytest.raises(ConflictError, match="already exists"):
            ExperimentService(db).create_experiment(
                WORKSPACE_ID, ExperimentCreateModel(key="dup", name="Again")
            )

    def test_same_key_in_other_workspace_is_allowed(self, db, make_experiment):
        make_experiment(key="shared", start=False)
        other = ExperimentService(db).create_experiment(
            "ws_other", ExperimentCreateModel(key="shared", name="Shared")
        )
        assert other.workspace_id == "ws_other"

    def test_pause_on_draft_rejected(self, db, make_experiment):
        experiment = make_experiment(start=False)
        with pytest.raises(InvalidStateError):
            ExperimentService(db).pause_experiment(WORKSPACE_ID, experiment.experiment_id)

    def test_start_requires_two_variants(self, db, make_experiment):
        experiment = make_experiment(weights=(1,), start=False)
        with pytest.raises(InvalidStateError, match="at least 2 variants"):
            ExperimentService(db).start_experiment(WORKSPACE_ID, experiment.experiment_id)

    def test_start_sets_start_at(self, make_experiment):
        experiment = make_experiment()
        assert experiment.status == ExperimentStatus.RUNNING
        assert experiment.start_at is not None

    def test_resume_preserves_start_at(self, db, make_experiment):
        experiment = make_experiment()
        original_start = experiment.start_at
        service = ExperimentService(db)

        paused = service.pause_experiment(WORKSPACE_ID, experiment.experiment_id)
        assert paused.status == ExperimentStatus.PAUSED

        resumed = service.start_experiment(WORKSPACE_ID, experiment.experiment_id)
        assert resumed.status == ExperimentStatus.RUNNING
        assert resumed.start_at == original_start

    def test_conclude_with_winner(self, db, make_experiment):
        experiment = make_experiment()
        winner = experiment.variants[1]

        concluded = ExperimentService(db).conclude_experiment(
            WORKSPACE_ID, experiment.experiment_id, winner.variant_id
        )
        assert concluded.status == ExperimentStatus.CONCLUDED
        assert concluded.winning_variant_id == winner.variant_id
        assert concluded.concluded_at is not None
        assert concluded.end_at is not None

    def test_conclude_keeps_scheduled_end(self, db, make_experiment):
        from datetime import datetime

        end = datetime(2030, 1, 1)
        experiment = make_experiment(end_at=end)
        concluded = ExperimentService(db).conclude_experiment(WORKSPACE_ID, experiment.experiment_id)
        assert concluded.end_at == end
        assert concluded.winning_variant_id is None

    def test_conclude_with_foreign_variant_rejected(self, db, make_experiment):
        experiment = make_experiment()
        other = make_experiment(key="other")
        with pytest.raises(InvalidStateError, match="not found in experiment"):
            ExperimentService(db).conclude_experiment(
                WORKSPACE_ID, experiment.experiment_id, other.variants[0].variant_id
            )

    def test_conclude_from_draft_rejected(self, db, make_experiment):
        experiment = make_experiment(start=False)
        with pytest.raises(InvalidStateError):
            ExperimentService(db).conclude_experiment(WORKSPACE_ID, experiment.experiment_id)

    def test_archive_from_any_status(self, db, make_experiment):
        service = ExperimentService(db)
        draft = make_experiment(key="draft", start=False)
        running = make_experiment(key="running")

        for experiment in (draft, running):
            archived = service.archive_experiment(WORKSPACE_ID, experiment.experiment_id)
            assert archived.status == ExperimentStatus.ARCHIVED

    def test_archived_hidden_from_default_listing(self, db, make_experiment):
        service = ExperimentService(db)
        kept = make_experiment(key="kept")
        gone = make_experiment(key="gone")
        service.archive_experiment(WORKSPACE_ID, gone.experiment_id)

        keys = [e.key for e in service.list_experiments(WORKSPACE_ID)]
        assert keys == ["kept"]

        with_archived = {e.key for e in service.list_experiments(WORKSPACE_ID, include_archived=True)}
        assert with_archived == {"kept", "gone"}

        archived_only = service.list_experiments(WORKSPACE_ID, status=ExperimentStatus.ARCHIVED)
        assert [e.key for e in archived_only] == ["gone"]

        # Still reachable directly
        assert service.get_experiment_by_key(WORKSPACE_ID, "gone").experiment_id == gone.experiment_id
        assert service.get_experiment(WORKSPACE_ID, kept.experiment_id).key == "kept"

    def test_unknown_experiment_not_found(self, db):
        service = ExperimentService(db)
        with pytest.raises(NotFoundError):
            service.get_experiment(WORKSPACE_ID, "missing")
        with pytest.raises(NotFoundError):
            service.start_experiment(WORKSPACE_ID, "missing")
        with pytest.raises(NotFoundError):
            service.get_experiment_by_key(WORKSPACE_ID, "missing")

    def test_other_workspace_cannot_see_experiment(self, db, make_experiment):
        experiment = make_experiment()
        with pytest.raises(NotFoundError):
            ExperimentService(db).get_experiment("ws_other", experiment.experiment_id)

    def test_update_experiment_applies_sent_fields_only(self, db, make_experiment):
        experiment = make_experiment(description="before")
        updated = ExperimentService(db).update_experiment(
            WORKSPACE_ID,
            experiment.experiment_id,
            ExperimentUpdateModel(traffic_allocation=40, metadata={"owner": "growth"}),
        )
        assert updated.traffic_allocation == 40
        assert updated.metadata_json == {"owner": "growth"}
        assert updated.description == "before"


class TestVariantManagement:
    def test_variants_keep_creation_order(self, make_experiment):
        experiment = make_experiment(weights=(1, 2, 3), start=False)
        assert [v.key for v in experiment.variants] == ["v1", "v2", "v3"]
        assert [v.position for v in experiment.variants] == [0, 1, 2]

    def test_add_variant_to_running_experiment_rejected(self, db, make_experiment):
        experiment = make_experiment()
        with pytest.raises(InvalidStateError, match="non-draft"):
            ExperimentService(db).add_variant(
                WORKSPACE_ID,
                experiment.experiment_id,
                VariantCreateModel(key="v3", name="Late"),
            )

    def test_duplicate_variant_key_conflicts(self, db, make_experiment):
        experiment = make_experiment(start=False)
        with pytest.raises(ConflictError):
            ExperimentService(db).add_variant(
                WORKSPACE_ID,
                experiment.experiment_id,
                VariantCreateModel(key="v1", name="Copy"),
            )

    def test_update_variant_while_running(self, db, make_experiment):
        experiment = make_experiment()
        variant = experiment.variants[0]
        updated = ExperimentService(db).update_variant(
            WORKSPACE_ID,
            experiment.experiment_id,
            variant.variant_id,
            VariantUpdateModel(weight=5, config={"color": "blue"}),
        )
        assert updated.weight == 5
        assert updated.config == {"color": "blue"}
        assert updated.name == "Variant 1"

    def test_update_unknown_variant_not_found(self, db, make_experiment):
        experiment = make_experiment()
        with pytest.raises(NotFoundError):
            ExperimentService(db).update_variant(
                WORKSPACE_ID, experiment.experiment_id, "missing", VariantUpdateModel(name="x")
            )

    def test_delete_variant_in_draft(self, db, make_experiment):
        experiment = make_experiment(weights=(1, 1, 1), start=False)
        service = ExperimentService(db)
        service.delete_variant(WORKSPACE_ID, experiment.experiment_id, experiment.variants[1].variant_id)

        remaining = service.get_experiment(WORKSPACE_ID, experiment.experiment_id)
        assert [v.key for v in remaining.variants] == ["v1", "v3"]

    def test_delete_variant_on_running_rejected(self, db, make_experiment):
        experiment = make_experiment()
        with pytest.raises(InvalidStateError, match="non-draft"):
            ExperimentService(db).delete_variant(
                WORKSPACE_ID, experiment.experiment_id, experiment.variants[0].variant_id
            )
