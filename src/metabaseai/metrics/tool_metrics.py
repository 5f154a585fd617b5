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
import time
from functools import wraps
from typing import Callable, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram

from metabaseai.metrics import registry

# created lazily against the current registry, which tests replace
_metrics: Optional[Tuple[CollectorRegistry, Counter, Histogram]] = None


def _get_metrics() -> Tuple[Counter, Histogram]:
    global _metrics
    reg = registry.get_registry()
    if _metrics is None or _metrics[0] is not reg:
        _metrics = (
            reg,
            Counter(
                "mcp_tool_invocations",
                "Number of MCP tool invocations",
                ["tool", "status"],
                registry=reg,
            ),
            Histogram(
                "mcp_tool_invocation_duration",
                "Duration of MCP tool invocations in seconds",
                ["tool"],
                registry=reg,
            ),
        )
    return _metrics[1], _metrics[2]


def instrument(name: str, fn: Callable) -> Callable:
    """Wrap the async tool ``fn`` so each call is counted and timed."""

    @wraps(fn)
    async def wrapper(*args, **kw):
        counter, histogram = _get_metrics()
        start = time.perf_counter()
        status = "error"
        try:
            result = await fn(*args, **kw)
            status = "success"
            return result
        finally:
            histogram.labels(tool=name).observe(time.perf_counter() - start)
            counter.labels(tool=name, status=status).inc()

    return wrapper
