from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Depends, Path, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette import status

from app.core.auth import require_workspace
from app.core.db import get_db, init_db
from app.core.errors import (
    ConflictError,
    ExperimentServiceError,
    InvalidStateError,
    NotFoundError,
    SubjectRequiredError,
)
from app.core.log_config import configure_logging
from app.models.orm.experiment import ExperimentStatus, ExperimentType
from app.models.schemas.assignment import (
    AssignmentRequestModel,
    ConversionRequestModel,
    ConversionResponseModel,
    DecisionModel,
    OverrideRequestModel,
    Subject,
)
from app.models.schemas.experiment import (
    ExperimentConcludeModel,
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentUpdateModel,
    VariantCreateModel,
    VariantResponseModel,
    VariantUpdateModel,
)
from app.models.schemas.stats import ExperimentStatsModel
from app.services.assignment_service import AssignmentService
from app.services.conversion_service import ConversionService
from app.services.experiment_service import ExperimentService
from app.services.stats_service import StatsService


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(
    title="Experiment assignment service",
    description="Deterministic A/B experiment bucketing, conversions and stats",
    version="0.1.0",
    dependencies=[Depends(require_workspace)],
    lifespan=lifespan,
)


# Most specific first: ConflictError is also an InvalidStateError
_ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (SubjectRequiredError, status.HTTP_400_BAD_REQUEST),
]


@app.exception_handler(ExperimentServiceError)
async def handle_service_error(request: Request, exc: ExperimentServiceError):
    status_code = next(
        (code for error_cls, code in _ERROR_STATUS if isinstance(exc, error_cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.detail})


def _subject(body: Subject) -> Subject:
    return Subject(
        customer_id=body.customer_id, session_id=body.session_id, user_id=body.user_id
    )


# --- Decisions ---
# Registered before "/experiments/{experiment_id}" routes so the literal
# "assign"/"convert" path segments are not taken for experiment ids.


@app.post(
    "/experiments/assign/{experiment_key}",
    response_model=Optional[DecisionModel],
    summary="Get or create the subject's assignment for one experiment",
)
def assign(
    body: AssignmentRequestModel,
    experiment_key: str = Path(..., description="The key of the experiment."),
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    """Returns null when the subject gets no decision (not running, not targeted, excluded)."""
    return AssignmentService(db).get_assignment(
        workspace_id, experiment_key, _subject(body), body.attributes
    )


@app.post(
    "/experiments/assign",
    response_model=List[DecisionModel],
    summary="Evaluate every running experiment for the subject",
)
def assign_all(
    body: AssignmentRequestModel,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    return AssignmentService(db).get_active_assignments(
        workspace_id, _subject(body), body.attributes
    )


@app.post(
    "/experiments/convert/{experiment_key}",
    response_model=ConversionResponseModel,
    summary="Record a conversion against the subject's assignment",
)
def convert(
    body: ConversionRequestModel,
    experiment_key: str = Path(..., description="The key of the experiment."),
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    recorded = ConversionService(db).record_conversion(
        workspace_id, experiment_key, _subject(body), body.value, body.metadata
    )
    return ConversionResponseModel(recorded=recorded)


# --- Experiments ---


@app.post(
    "/experiments",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_201_CREATED,
)
def post_experiments(
    experiment_data: ExperimentCreateModel,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).create_experiment(workspace_id, experiment_data)
    return ExperimentResponseModel.model_validate(experiment)


@app.get("/experiments", response_model=List[ExperimentResponseModel])
def list_experiments(
    status_filter: Optional[ExperimentStatus] = Query(None, alias="status"),
    type_filter: Optional[ExperimentType] = Query(None, alias="type"),
    include_archived: bool = Query(False),
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiments = ExperimentService(db).list_experiments(
        workspace_id,
        status=status_filter,
        experiment_type=type_filter,
        include_archived=include_archived,
    )
    return [ExperimentResponseModel.model_validate(e) for e in experiments]


@app.get("/experiments/key/{key}", response_model=ExperimentResponseModel)
def get_experiment_by_key(
    key: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).get_experiment_by_key(workspace_id, key)
    return ExperimentResponseModel.model_validate(experiment)


@app.get("/experiments/{experiment_id}", response_model=ExperimentResponseModel)
def get_experiment(
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).get_experiment(workspace_id, experiment_id)
    return ExperimentResponseModel.model_validate(experiment)


@app.patch("/experiments/{experiment_id}", response_model=ExperimentResponseModel)
def patch_experiment(
    updates: ExperimentUpdateModel,
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).update_experiment(workspace_id, experiment_id, updates)
    return ExperimentResponseModel.model_validate(experiment)


@app.post("/experiments/{experiment_id}/start", response_model=ExperimentResponseModel)
def start_experiment(
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).start_experiment(workspace_id, experiment_id)
    return ExperimentResponseModel.model_validate(experiment)


@app.post("/experiments/{experiment_id}/pause", response_model=ExperimentResponseModel)
def pause_experiment(
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).pause_experiment(workspace_id, experiment_id)
    return ExperimentResponseModel.model_validate(experiment)


@app.post("/experiments/{experiment_id}/conclude", response_model=ExperimentResponseModel)
def conclude_experiment(
    experiment_id: str,
    body: Optional[ExperimentConcludeModel] = None,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    winning_variant_id = body.winning_variant_id if body else None
    experiment = ExperimentService(db).conclude_experiment(
        workspace_id, experiment_id, winning_variant_id
    )
    return ExperimentResponseModel.model_validate(experiment)


@app.post("/experiments/{experiment_id}/archive", response_model=ExperimentResponseModel)
def archive_experiment(
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    experiment = ExperimentService(db).archive_experiment(workspace_id, experiment_id)
    return ExperimentResponseModel.model_validate(experiment)


# --- Variants ---


@app.post(
    "/experiments/{experiment_id}/variants",
    response_model=VariantResponseModel,
    status_code=status.HTTP_201_CREATED,
)
def post_variant(
    variant_data: VariantCreateModel,
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    variant = ExperimentService(db).add_variant(workspace_id, experiment_id, variant_data)
    return VariantResponseModel.model_validate(variant)


@app.patch(
    "/experiments/{experiment_id}/variants/{variant_id}",
    response_model=VariantResponseModel,
)
def patch_variant(
    updates: VariantUpdateModel,
    experiment_id: str,
    variant_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    variant = ExperimentService(db).update_variant(
        workspace_id, experiment_id, variant_id, updates
    )
    return VariantResponseModel.model_validate(variant)


@app.delete(
    "/experiments/{experiment_id}/variants/{variant_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_variant(
    experiment_id: str,
    variant_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    ExperimentService(db).delete_variant(workspace_id, experiment_id, variant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Overrides & stats ---


@app.post(
    "/experiments/{experiment_id}/override",
    response_model=DecisionModel,
    summary="Pin a subject to a variant",
)
def override_assignment(
    body: OverrideRequestModel,
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    return AssignmentService(db).override_assignment(
        workspace_id, experiment_id, body.variant_id, _subject(body)
    )


@app.get(
    "/experiments/{experiment_id}/stats",
    response_model=ExperimentStatsModel,
    summary="Get statistics for an experiment",
)
def get_experiment_stats(
    experiment_id: str,
    workspace_id: str = Depends(require_workspace),
    db: Session = Depends(get_db),
):
    return StatsService(db).get_experiment_stats(workspace_id, experiment_id)


# Entry point for running the application directly (local development)
if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
