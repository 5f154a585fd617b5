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
Rate limit handling of the Metabase transport, from RetryConfig up to a
session authenticated client talking to a local stand-in for Metabase.
"""
from types import SimpleNamespace

import pytest
from aiohttp import ClientResponseError, test_utils, web

from metabaseai.api import transport
from metabaseai.api.transport import MetabaseAsyncHttpClient, RetryConfig
from metabaseai.config import settings

USER = "analyst@example.com"


def use_settings(metabase=None):
    old = settings._settings.get()
    settings._settings.set(settings.Settings.model_validate({"metabase": metabase}))
    return old


@pytest.fixture
def retry_settings():
    old = use_settings(
        {
            "uri": "https://metabase.example.com",
            "username": USER,
            "password": "pw",
            "http_retry": {
                "max_retries": 4,
                "initial_delay": 0.5,
                "max_delay": 5.0,
                "backoff_multiplier": 4.0,
            },
        }
    )
    yield settings.instance()
    settings._settings.set(old)


class TestRetryConfig:
    def test_defaults_without_metabase(self):
        old = use_settings()
        try:
            config = RetryConfig()
        finally:
            settings._settings.set(old)
        assert config.max_retries == 3
        assert config.get_config_delay(2) == 4.0

    def test_reads_metabase_section(self, retry_settings):
        assert RetryConfig().max_retries == 4

    @pytest.mark.parametrize(
        "attempt, retry_after, expected",
        [
            (0, None, 0.5),
            (1, None, 2.0),
            (3, None, 5.0),
            (1, "1", 1.0),
            (0, "30", 0.5),
            (1, "soon", 2.0),
        ],
    )
    def test_delay(self, retry_settings, attempt, retry_after, expected):
        headers = {} if retry_after is None else {"Retry-After": retry_after}
        response = SimpleNamespace(headers=headers)
        assert RetryConfig().get_delay(response, attempt) == expected


class FakeMetabase:
    """Answers /api/session and /api/database the way Metabase does, with a
    configurable number of 429s and a set of expired session ids."""

    def __init__(self, throttle: int = 0, expired=()):
        self.throttle = throttle
        self.expired = set(expired)
        self.logins = 0
        self.sessions = []

    async def login(self, request):
        credentials = await request.json()
        assert credentials["username"] == USER
        self.logins += 1
        return web.json_response({"id": f"session-{self.logins}"})

    async def databases(self, request):
        session = request.headers.get("X-Metabase-Session")
        self.sessions.append(session)
        if self.throttle:
            self.throttle -= 1
            return web.Response(
                status=429, text="Too many requests", headers={"Retry-After": "0"}
            )
        if session in self.expired:
            return web.Response(status=401, text="Unauthenticated")
        return web.json_response({"data": [{"id": 1, "name": "warehouse"}]})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/session", self.login)
        app.router.add_get("/api/database", self.databases)
        return app


@pytest.fixture
def clear_session_tokens():
    transport._session_tokens.clear()
    yield
    transport._session_tokens.clear()


async def serve(metabase: FakeMetabase, max_retries: int = 3):
    server = test_utils.TestServer(metabase.app())
    await server.start_server()
    uri = str(server.make_url("")).rstrip("/")
    old = use_settings(
        {
            "uri": uri,
            "username": USER,
            "password": "pw",
            "http_retry": {"max_retries": max_retries, "initial_delay": 0.01},
        }
    )
    return server, uri, old


class TestThrottledMetabase:
    @pytest.mark.asyncio
    async def test_throttled_request_succeeds(self, clear_session_tokens):
        metabase = FakeMetabase(throttle=2)
        server, _, old = await serve(metabase)
        try:
            result = await MetabaseAsyncHttpClient().get("/api/database")
        finally:
            settings._settings.set(old)
            await server.close()
        assert result == {"data": [{"id": 1, "name": "warehouse"}]}
        assert metabase.logins == 1
        assert metabase.sessions == ["session-1"] * 3

    @pytest.mark.asyncio
    async def test_expired_session_after_throttling(self, clear_session_tokens):
        metabase = FakeMetabase(throttle=1, expired={"stale"})
        server, uri, old = await serve(metabase)
        transport._session_tokens[(uri, USER)] = "stale"
        try:
            result = await MetabaseAsyncHttpClient().get("/api/database")
        finally:
            settings._settings.set(old)
            await server.close()
        assert result["data"][0]["name"] == "warehouse"
        assert metabase.sessions == ["stale", "stale", "session-1"]
        assert transport._session_tokens[(uri, USER)] == "session-1"

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, clear_session_tokens):
        metabase = FakeMetabase(throttle=10)
        server, _, old = await serve(metabase, max_retries=2)
        try:
            with pytest.raises(ClientResponseError) as e:
                await MetabaseAsyncHttpClient().get("/api/database")
        finally:
            settings._settings.set(old)
            await server.close()
        assert e.value.status == 429
        assert e.value.message == "Too many requests"
        assert len(metabase.sessions) == 3
