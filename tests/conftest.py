from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fixtures_plugins.engine_fakes import TEST_CATALOG, BusRecorder, Clock, RecordingActions, ScriptedModel

from hopline.agents import AgentCatalog, parse_agent_catalog
from hopline.app import Hopline
from hopline.config import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        home=tmp_path,
        model_backoff_seconds=0,
        enqueue_backoff_seconds=0,
        model_timeout_seconds=5,
    )


@pytest.fixture
def catalog() -> AgentCatalog:
    return parse_agent_catalog(TEST_CATALOG)


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def recorder() -> RecordingActions:
    return RecordingActions()


@pytest.fixture
def hopline(
    settings: Settings, catalog: AgentCatalog, model: ScriptedModel, recorder: RecordingActions
) -> Iterator[Hopline]:
    app = Hopline(settings, catalog=catalog, model=model, plugins=[recorder], clock=Clock())
    yield app
    app.close()


@pytest.fixture
def bus_log(hopline: Hopline) -> BusRecorder:
    return BusRecorder(hopline)
