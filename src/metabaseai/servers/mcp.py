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
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.prompts import Prompt

from metabaseai.metrics.registry import get_metrics_app
from metabaseai.metrics.tool_metrics import instrument
from starlette.requests import Request
from starlette.responses import Response

from metabaseai.tools import tools
from metabaseai.db.manager import get_manager
import os
from typing import List, Union, Annotated, Optional, Tuple, Dict, Any
from functools import reduce
from operator import ior
from pathlib import Path
from metabaseai import log
from typer import Typer, Option, Argument, BadParameter
from rich import console, table, print as pp
from click import Choice
import contextlib
import logging
from metabaseai.config import settings
from enum import StrEnum, auto
from json import load, dump as jdump
from shutil import which
import asyncio
from yaml import dump, safe_load
import sys
import uvicorn


class Transports(StrEnum):
    stdio = auto()
    streamable_http = "streamable-http"


@contextlib.asynccontextmanager
async def _release_connections(_server=None):
    try:
        yield {}
    finally:
        await get_manager().disconnect_all()


class MetabaseFastMCP(FastMCP):
    def streamable_http_app(self):
        app = super().streamable_http_app()
        session_lifespan = app.router.lifespan_context

        # database handles outlive single sessions, release them with the app
        @contextlib.asynccontextmanager
        async def lifespan(a):
            async with session_lifespan(a):
                async with _release_connections():
                    yield

        app.router.lifespan_context = lifespan
        return app


def init(
    mode: Union[tools.ToolType, List[tools.ToolType]] = None,
    transport: Transports = Transports.stdio,
    port: int = None,
    host: str = "127.0.0.1",
) -> FastMCP:
    log.logger("init").info(
        f"Initializing MCP server with mode={mode}, transport={transport}"
    )
    opts = {"log_level": "DEBUG", "debug": True}
    if port is not None:
        opts["port"] = port
    if host is not None:
        opts["host"] = host
    if transport == Transports.stdio:
        opts["lifespan"] = _release_connections

    mcp = MetabaseFastMCP("Metabase", **opts)
    if isinstance(mode, list):
        mode = reduce(ior, mode)
    for tool in tools.get_tools(For=mode):
        tool_instance = tool()
        name = tool.__name__
        mcp.add_tool(
            instrument(name, tools.format_errors(tool_instance.invoke)),
            name=name,
            description=tool_instance.invoke.__doc__,
        )

    mcp.add_prompt(
        Prompt.from_function(tools.system_prompt, "System Prompt", "System Prompt")
    )

    @mcp.custom_route("/healthz", methods=["GET"])
    async def health_check(_request: Request) -> Response:
        """Kubernetes-style health check endpoint"""
        return Response(content="OK", status_code=200, media_type="text/plain")

    return mcp


def create_metrics_server(host: str, port: int, log_level: str) -> uvicorn.Server:
    # Prometheus metrics are served by their own uvicorn server
    metrics_app = get_metrics_app()
    config = uvicorn.Config(
        app=metrics_app, host=host, port=port, log_level=log_level.lower(), access_log=False
    )
    server = uvicorn.Server(config)

    log.logger("metrics_server").info(
        f"Created metrics server config for {host}:{port}"
    )
    return server


def run_with_metrics_server(
    app: FastMCP, transport: Transports, metrics_server: uvicorn.Server | None = None
):
    """
    Run the MCP server, and the metrics server alongside it when given.

    Args:
        app: The FastMCP server instance
        transport: Transport type
        metrics_server: Optional metrics server to run concurrently
    """
    if metrics_server is None:
        app.run(transport=transport.value)
        return

    async def _serve():
        metrics_task = asyncio.create_task(metrics_server.serve())
        try:
            match transport:
                case Transports.streamable_http:
                    await app.run_streamable_http_async()
                case _:
                    await app.run_stdio_async()
        finally:
            metrics_server.should_exit = True
            try:
                await metrics_task
            except asyncio.CancelledError as e:
                log.logger("metrics_server").warning(f"Metrics server stopped: {e}")

    asyncio.run(_serve())


def _mode() -> List[str]:
    return [tt.name for tt in tools.ToolType]


ty = Typer(context_settings=dict(help_option_names=["-h", "--help"]))


@ty.command(name="run", help="Run the Metabase AI MCP server")
def main(
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config yaml for various options"),
    ] = None,
    log_to_file: Annotated[Optional[bool], Option(help="Log to file")] = True,
    enable_json_logging: Annotated[
        Optional[bool], Option(help="Enable JSON logs")
    ] = False,
    enable_streaming_http: Annotated[
        Optional[bool], Option(help="Run MCP as streaming HTTP")
    ] = False,
    log_level: Annotated[
        Optional[str],
        Option(
            help="The log level", click_type=Choice(list(logging._nameToLevel.keys()))
        ),
    ] = "INFO",
    port: Annotated[Optional[int], Option(help="The port to listen on")] = None,
    host: Annotated[
        Optional[str],
        Option(help="Where uvicorn listens for requests"),
    ] = "127.0.0.1",
):
    log.configure(enable_json_logging=enable_json_logging, to_file=log_to_file)
    log.set_level(log_level)
    if enable_streaming_http:
        transport = Transports.streamable_http
    else:
        transport = Transports.stdio

    cfg = settings.configure(config_file).get()
    if cfg.metabase is None or cfg.metabase.uri is None:
        raise BadParameter("metabase.uri is not configured, see `config create metabaseai`")

    app = init(
        mode=cfg.tools.server_mode,
        transport=transport,
        port=port,
        host=host,
    )

    metrics_server = None
    if (
        cfg.metabase.prometheus_metrics_enabled
        and cfg.metabase.prometheus_metrics_port is not None
    ):
        metrics_server = create_metrics_server(
            host=host,
            port=cfg.metabase.prometheus_metrics_port,
            log_level=log_level,
        )

    run_with_metrics_server(app, transport, metrics_server)


tc = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="config",
    help="Configuration management",
)


class ConfigTypes(StrEnum):
    metabaseai = auto()
    claude = auto()


def get_claude_config_path() -> Path:
    # returns the path whether or not it exists
    dir = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"), "Claude")
    match sys.platform:
        case "win32":
            dir = Path(Path.home(), "AppData", "Roaming", "Claude")
        case "darwin":
            dir = Path(Path.home(), "Library", "Application Support", "Claude")
    return dir / "claude_desktop_config.json"


@tc.command("list", help="Show default configuration, if it exists")
def show_default_config(
    show_filename: Annotated[
        bool, Option(help="Show the filename for default config file")
    ] = False,
    type: Annotated[
        Optional[ConfigTypes],
        Option(help="The type of configuration to show", show_default=True),
    ] = ConfigTypes.metabaseai,
):

    match type:
        case ConfigTypes.metabaseai:
            dc = settings.default_config()
            pp(f"Default config file: {dc!s} (exists = {dc.exists()!s})")
            if not show_filename:
                settings.configure(dc)
                pp(
                    dump(
                        settings.instance().model_dump(
                            exclude_none=True,
                            mode="json",
                            exclude_unset=True,
                            by_alias=True,
                        )
                    )
                )
            pp(f"Default log file: {log.get_log_file()!s}")
        case ConfigTypes.claude:
            cc = get_claude_config_path()
            pp(f"Default config file: '{cc!s}' (exists = {cc.exists()!s})")
            if not show_filename:
                with cc.open() as f:
                    jdump(load(f), sys.stdout, indent=2)


cc = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="create",
    help="Create Metabase AI or LLM configuration files",
)
tc.add_typer(cc)


def create_default_mcpserver_config() -> Dict[str, Any]:
    if (uv := which("uv")) is not None:
        uv = Path(uv).resolve()
        dir = str(Path(os.getcwd()).resolve())
        return {
            "command": str(uv),
            "args": ["run", "--directory", dir, "metabase-mcp-server", "run"],
        }
    else:
        raise FileNotFoundError("uv command not found. Please install uv")


def create_default_config_helper(dry_run: bool):
    cc = get_claude_config_path()
    dcmp = {"Metabase": create_default_mcpserver_config()}
    if cc.exists():
        with cc.open() as f:
            c = load(f)
    else:
        c = {"mcpServers": {}}
    c.setdefault("mcpServers", {}).update(dcmp)
    if dry_run:
        pp(c)
        return

    if not cc.exists():
        cc.parent.mkdir(parents=True, exist_ok=True)

    with cc.open("w") as f:
        jdump(c, f)
        pp(f"Created default config file: {cc!s}")


@cc.command("claude", help="Create a default configuration file for Claude")
def create_claude_config(
    dry_run: Annotated[
        bool, Option(help="Dry run, do not overwrite the config file. Just print it")
    ] = False,
):
    create_default_config_helper(dry_run)


@cc.command("metabaseai", help="Create a default configuration file")
def create_default_config(
    uri: Annotated[str, Option(help="The Metabase URL")],
    username: Annotated[
        Optional[str], Option(help="The Metabase user to log in as")
    ] = None,
    password: Annotated[
        Optional[str],
        Option(
            help="The Metabase password. If it starts with @ then the rest is treated as a filename"
        ),
    ] = None,
    api_key: Annotated[
        Optional[str],
        Option(help="A Metabase API key, used instead of username and password"),
    ] = None,
    mode: Annotated[
        Optional[List[str]],
        Option("-m", "--mode", help="MCP server mode", click_type=Choice(_mode())),
    ] = [tools.ToolType.FOR_EXPLORATION.name, tools.ToolType.FOR_BI.name],
    name_prefix: Annotated[
        Optional[str], Option(help="The prefix of objects the DDL tools may manage")
    ] = None,
    dry_run: Annotated[
        bool, Option(help="Dry run, do not overwrite the config file. Just print it")
    ] = False,
):
    if api_key is None and (username is None or password is None):
        raise BadParameter("Either --api-key or --username and --password are required")
    mode = ",".join([tools.ToolType[m.upper()].name for m in mode])
    metabase = settings.Metabase.model_validate(
        {"uri": uri, "username": username, "password": password, "api_key": api_key}
    )
    ts = settings.Tools.model_validate({"server_mode": mode})
    settings.configure(settings.default_config(), force=True)
    settings.instance().metabase = metabase
    settings.instance().tools = ts
    if name_prefix is not None:
        settings.instance().policy.name_prefix = name_prefix
    if (d := settings.write_settings(dry_run=dry_run)) is not None and dry_run:
        pp(d)
    elif not dry_run:
        pp(f"Created default config file: {settings.default_config()!s}")


# --------------------------------------------------------------------------------
# testing support

tl = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="tools",
    help="Support for testing tools directly",
)


@tl.command(
    name="list",
    help="List the available tools",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_list(
    mode: Annotated[
        Optional[List[str]],
        Option("-m", "--mode", help="MCP server mode", click_type=Choice(_mode())),
    ] = _mode(),
):
    mode = reduce(ior, [tools.ToolType[m.upper()] for m in mode])
    tab = table.Table(
        table.Column("Tool", justify="left", style="cyan"),
        "Description",
        "For",
        title="Tools list",
        show_lines=True,
    )

    for tool in tools.get_tools(For=mode):
        For = tools.get_for(tool)
        doc = (tool.invoke.__doc__ or "No Description").strip()
        tab.add_row(tool.__name__, doc, For.name)
    console.Console().print(tab)


def _to_kw(arg: str) -> Tuple[str, Any]:
    if "=" not in arg:
        raise BadParameter(f"Argument {arg} is not in the form arg=value")
    k, v = arg.split("=", 1)
    # yaml gives ints, booleans and lists their natural type
    return k, safe_load(v) if v else v


@tl.command(
    name="invoke",
    help="Execute an available tool",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_exec(
    tool: Annotated[str, Option("-t", "--tool", help="The tool to execute")],
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config yaml for various options"),
    ] = None,
    overrides: Annotated[
        Optional[List[str]],
        Option("-s", "--set", help="Override a setting for this call (e.g. policy.dry_run=true)"),
    ] = None,
    args: Annotated[
        Optional[List[str]],
        Argument(help="The arguments to pass to the tool (arg=value ...)"),
    ] = None,
):
    settings.configure(config_file)

    if args is None:
        args = []
    elif type(args) == str:
        args = [args]
    kw = dict(map(_to_kw, args))
    for_all = reduce(ior, tools.ToolType.__members__.values())
    all_tools = {t.__name__: t for t in tools.get_tools(for_all)}

    if (selected := all_tools.get(tool)) is None:
        raise BadParameter(f"Tool {tool} not found")

    async def _invoke():
        try:
            return await selected().invoke(**kw)
        finally:
            await get_manager().disconnect_all()

    result = asyncio.run(
        settings.run_with(_invoke, dict(map(_to_kw, overrides or [])))
    )
    pp(result)


ty.add_typer(tl)
ty.add_typer(tc)


def cli():
    ty()


if __name__ == "__main__":
    cli()
