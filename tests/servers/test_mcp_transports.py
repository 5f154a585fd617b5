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
import json

import pytest
from typer.testing import CliRunner
from unittest.mock import Mock, patch

from metabaseai.config import settings
from metabaseai.servers import mcp


runner = CliRunner()


class TestTransports:
    def test_transport_values(self):
        assert mcp.Transports.stdio == "stdio"
        assert mcp.Transports.streamable_http == "streamable-http"

    def test_stdio_without_metrics(self):
        app = Mock()
        mcp.run_with_metrics_server(app, mcp.Transports.stdio)
        app.run.assert_called_once_with(transport="stdio")

    def test_metrics_server(self):
        server = mcp.create_metrics_server("127.0.0.1", 9091, "INFO")
        assert server.config.port == 9091
        assert server.config.host == "127.0.0.1"
        assert server.config.log_level == "info"


class TestToolArguments:
    @pytest.mark.parametrize(
        "arg, expected",
        [
            ("database_id=3", ("database_id", 3)),
            ("approved=true", ("approved", True)),
            ("columns=[a, b]", ("columns", ["a", "b"])),
            ("sql=SELECT a=1", ("sql", "SELECT a=1")),
            ("schema=", ("schema", "")),
        ],
    )
    def test_to_kw(self, arg, expected):
        assert mcp._to_kw(arg) == expected

    def test_to_kw_requires_assignment(self):
        with pytest.raises(Exception):
            mcp._to_kw("database_id")


class TestCli:
    def test_tools_list(self):
        result = runner.invoke(mcp.ty, ["tools", "list", "-m", "FOR_DDL"])
        assert result.exit_code == 0, result.output
        assert "CreateTable" in result.output
        assert "ListDatabases" not in result.output

    def test_unknown_tool(self, mock_config_dir, mock_settings_instance):
        result = runner.invoke(mcp.ty, ["tools", "invoke", "-t", "NoSuchTool"])
        assert result.exit_code != 0

    def test_create_config_dry_run(self, mock_config_dir, mock_settings_instance):
        result = runner.invoke(
            mcp.ty,
            [
                "config", "create", "metabaseai",
                "--uri", "https://metabase.example.com",
                "--api-key", "mb_key",
                "-m", "FOR_DDL",
                "--name-prefix", "tmp_",
                "--dry-run",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "https://metabase.example.com" in result.output
        assert "tmp_" in result.output
        assert not settings.default_config().exists() or settings.default_config().read_text() == ""

    def test_create_config_needs_credentials(self, mock_config_dir, mock_settings_instance):
        result = runner.invoke(
            mcp.ty,
            ["config", "create", "metabaseai", "--uri", "https://metabase.example.com"],
        )
        assert result.exit_code != 0

    def test_run_requires_uri(self, mock_config_dir, mock_settings_instance):
        result = runner.invoke(mcp.ty, ["run", "--no-log-to-file"])
        assert result.exit_code != 0

    def test_claude_config(self, mock_config_dir):
        with patch.object(mcp, "which", return_value="/usr/bin/uv"):
            mcp.create_default_config_helper(dry_run=False)
        config = json.loads(mcp.get_claude_config_path().read_text())
        server = config["mcpServers"]["Metabase"]
        assert server["args"][-2:] == ["metabase-mcp-server", "run"]
