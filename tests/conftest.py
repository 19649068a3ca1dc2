import os

# Must be set before app modules build the engine and read settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKENS"] = '{"test-token": "ws_test", "other-token": "ws_other"}'

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.core.db import build_engine, get_db, init_db
from app.main import app
from app.models.schemas.experiment import ExperimentCreateModel, VariantCreateModel
from app.services.experiment_service import ExperimentService

WORKSPACE_ID = "ws_test"


@pytest.fixture
def engine(tmp_path):
    # File-backed so that separate connections (threads) share one database
    engine = build_engine(f"sqlite:///{tmp_path / 'experiments.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers={"Authorization": "Bearer test-token"})
    app.dependency_overrides.clear()


@pytest.fixture
def make_experiment(db):
    """Creates an experiment with the given variant weights, optionally started."""

    def _make(key="exp1", weights=(1, 1), start=True, **fields):
        service = ExperimentService(db)
        experiment = service.create_experiment(
            WORKSPACE_ID, ExperimentCreateModel(key=key, name=key.title(), **fields)
        )
        for index, weight in enumerate(weights):
            service.add_variant(
                WORKSPACE_ID,
                experiment.experiment_id,
                VariantCreateModel(
                    key=f"v{index + 1}",
                    name=f"Variant {index + 1}",
                    weight=weight,
                    config={"index": index + 1},
                    is_control=index == 0,
                ),
            )
        if start:
            service.start_experiment(WORKSPACE_ID, experiment.experiment_id)
        return service.get_experiment(WORKSPACE_ID, experiment.experiment_id)

    return _make
