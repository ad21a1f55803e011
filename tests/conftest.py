# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Shared fixtures: isolated home directory, database and engine per test"""

import pytest

from loyaltyflow.core.cache import DefinitionCache
from loyaltyflow.core.config import FlowConfig
from loyaltyflow.core.definitions import DefinitionStore
from loyaltyflow.core.engine import WorkflowEngine
from loyaltyflow.core.outbound import InMemoryOutbound
from loyaltyflow.core.storage import Database


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config files, databases and logs inside tmp_path"""
    home = tmp_path / "home"
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("LOYALTYFLOW_HOME", str(home))
    monkeypatch.setenv("LOYALTYFLOW_NO_FILE_LOGS", "true")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("loyaltyflow.core.config._config", None)
    return home


@pytest.fixture
def config(tmp_path):
    return FlowConfig(
        paths={"home": tmp_path / "home"},
        runtime={"dispatch_retry_delay_ms": 10},
    )


@pytest.fixture
def database(config):
    return Database(config.paths.database)


@pytest.fixture
def definitions(config):
    return DefinitionStore(config.paths.definitions_dir, cache=DefinitionCache())


@pytest.fixture
def outbound():
    return InMemoryOutbound()


@pytest.fixture
def engine(config, database, definitions, outbound):
    return WorkflowEngine(
        config=config,
        database=database,
        definitions=definitions,
        outbound=outbound,
    )
