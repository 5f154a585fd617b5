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
import logging
import sys
from os import environ
from pathlib import Path
from typing import Optional, Union

import structlog

_TOP = __name__.split(".")[0]
_handler: Optional[logging.Handler] = None


def get_log_directory() -> Path:
    return Path(environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / _TOP


def get_log_file() -> Path:
    return get_log_directory() / f"{_TOP}.log"


def _renderer(enable_json_logging: bool):
    if enable_json_logging:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def configure(enable_json_logging: bool = False, to_file: bool = False):
    """Route structlog through stdlib logging.

    stdout is reserved for the stdio MCP transport, so records go either to
    the log file or to stderr.
    """
    global _handler
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    if to_file:
        get_log_directory().mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(get_log_file())
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _renderer(enable_json_logging),
            ],
        )
    )

    root = logging.getLogger(_TOP)
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.propagate = False
    _handler = handler


def set_level(level: Union[str, int]):
    if isinstance(level, str):
        level = level.upper()
    logging.getLogger(_TOP).setLevel(level)


def logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    if name is None:
        name = _TOP
    elif not name.startswith(_TOP):
        name = f"{_TOP}.{name}"
    return structlog.get_logger(name)
