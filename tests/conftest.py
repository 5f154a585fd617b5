#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#

"""
Global pytest fixtures for metabase-mcp-server tests.
"""
import os
from typing import Any, Dict, List, Optional

import pytest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from metabaseai import log
from metabaseai.api.metabase.models import ConnectionInfo, Engine
from metabaseai.config import settings
from metabaseai.config.tools import ToolType
from metabaseai.db.drivers import Driver
from metabaseai.metrics import registry
from prometheus_client import CollectorRegistry


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    """Install the stdlib structlog wiring the server sets up at startup."""
    log.configure()
    yield


@pytest.fixture(autouse=True)
def reset_metrics_registry():
    """
    Reset the global metrics registry between tests.

    This ensures that metrics from previous tests don't persist and affect subsequent
    test assertions.
    """
    registry._registry = CollectorRegistry()

    yield


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for config files"""
    with TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_config_dir(temp_config_dir):
    """Mock the home directory to use our temporary directory"""
    with patch.object(Path, "home", return_value=temp_config_dir):
        # Also patch XDG_CONFIG_HOME environment variable
        old_env = os.environ.get("XDG_CONFIG_HOME")
        os.environ["XDG_CONFIG_HOME"] = str(temp_config_dir)
        yield temp_config_dir
        # Restore original environment
        if old_env:
            os.environ["XDG_CONFIG_HOME"] = old_env
        else:
            os.environ.pop("XDG_CONFIG_HOME", None)


@pytest.fixture
def mock_settings_instance():
    """Create a mock settings instance with default values"""
    old_settings = settings._settings.get()
    try:
        settings._settings.set(
            settings.Settings.model_validate(
                {
                    "metabase": {
                        "uri": "https://metabase.example.com",
                        "username": "analyst@example.com",
                        "password": "test-password",
                    },
                    "tools": {"server_mode": ToolType.FOR_EXPLORATION.name},
                }
            )
        )
        yield settings.instance()
    finally:
        settings._settings.set(old_settings)


class FakeDriver(Driver):
    """In memory driver answering queries from canned results.

    ``results`` maps a substring of the SQL to the rows (or exception) to return
    for it; statements passed to ``execute`` are recorded.
    """

    query_errors = (OSError,)

    def __init__(self, results: Optional[Dict[str, Any]] = None, connect_error=None):
        self.results = results or {}
        self.connect_error = connect_error
        self.executed: List[str] = []
        self.fetched: List[str] = []
        self._connected = False
        self.closes = 0

    async def connect(self, info, timeout=None):
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True

    async def fetch(self, sql: str) -> List[Dict[str, Any]]:
        self.fetched.append(sql)
        for fragment, result in self.results.items():
            if fragment in sql:
                if isinstance(result, Exception):
                    raise result
                return result
        return []

    async def execute(self, sql: str) -> Any:
        self.executed.append(sql)
        return {"status": "OK"}

    async def close(self):
        self.closes += 1
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected


@pytest.fixture
def postgres_info() -> ConnectionInfo:
    return ConnectionInfo(
        id=1,
        name="warehouse",
        engine=Engine.postgres,
        raw_engine="postgres",
        host="db.example.com",
        port=5432,
        database="warehouse",
        user="metabase",
        password="s3cret",
    )
