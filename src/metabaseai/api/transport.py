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
import asyncio

from aiohttp import ClientSession, ClientResponse, ClientResponseError
from typing import (
    AnyStr,
    Callable,
    Optional,
    Dict,
    Tuple,
    TypeAlias,
    Union,
    TextIO,
    Awaitable,
    Any,
)
from metabaseai.log import logger
from json import loads
from pydantic import BaseModel, ValidationError
from http import HTTPStatus

from metabaseai.config import settings

DeserializationStrategy: TypeAlias = Union[Callable, BaseModel]

_SENSITIVE_HEADERS = {"authorization", "x-metabase-session", "x-api-key"}

# session tokens shared by every client talking to the same metabase as the
# same user, keyed by (uri, username)
_session_tokens: Dict[Tuple[str, str], str] = {}


class RetryConfig:
    def __init__(self):
        if settings.instance() and settings.instance().metabase:
            self.config = settings.instance().metabase.http_retry
        else:
            self.config = settings.HttpRetry()

    @property
    def max_retries(self) -> int:
        """Expose max_retries from config for convenience"""
        return self.config.max_retries

    def get_config_delay(self, attempt_number: int = 0) -> float:
        return self.config.initial_delay * (
            self.config.backoff_multiplier**attempt_number
        )

    def get_delay(
        self,
        response: ClientResponse,
        attempt_number: int,
    ) -> float:
        retry_after = response.headers.get("Retry-After")
        delay = self.get_config_delay(attempt_number=attempt_number)
        if retry_after is not None:
            try:
                delay = min(delay, int(retry_after))
            except (ValueError, TypeError) as e:
                logger().debug(
                    f"Invalid Retry-After header, using exponential backoff - {e}"
                )

        return min(delay, self.config.max_delay)


async def retry_middleware(
    req, handler: Callable[[Any], Awaitable[ClientResponse]]
) -> ClientResponse:
    """
    Middleware that automatically retries requests on 429 (rate limit) errors.
    Uses exponential backoff with configurable parameters from settings.
    """
    retry_config = RetryConfig()
    for attempt in range(retry_config.max_retries + 1):
        response = await handler(req)
        if response.status != HTTPStatus.TOO_MANY_REQUESTS:
            break

        delay = retry_config.get_delay(response, attempt)
        logger(f"{__name__}.retry").warning(
            f"Rate limited (429) on {req.method} {req.url.path}. "
            f"Retry {attempt + 1}/{retry_config.max_retries} after {delay:.2f}s"
        )
        await asyncio.sleep(delay)

    return response


class AsyncHttpClient:
    def __init__(self, uri: AnyStr, token: Optional[AnyStr] = None):
        self.uri = uri
        self.token = token
        self.headers = {"content-type": "application/json"}
        self.update_headers()

    def update_headers(self):
        if self.token is not None:
            self.headers["Authorization"] = f"Bearer {self.token}"

    async def download(self, response: ClientResponse, file: TextIO):
        while chunk := await response.content.read(1024):
            file.write(chunk)
        file.flush()

    async def deserialize(
        self,
        response: ClientResponse,
        deser: DeserializationStrategy,
        top_level_list: bool = False,
    ):
        js = await response.text()
        if not js:
            return None
        try:
            if isinstance(deser, type) and issubclass(deser, BaseModel):
                if top_level_list:
                    return [deser.model_validate(o) for o in loads(js)]
                return deser.model_validate_json(js)
            return loads(js, object_hook=deser)
        except ValidationError as e:
            logger().error(
                f"in {response.request_info.method} {response.request_info.url}: {e.errors()}\ndata = {js}"
            )
            raise RuntimeError(f"Unable to parse {e}, deser={deser}\n{e.errors()}")
        except Exception as e:
            logger().error(
                f"in {response.request_info.method} {response.request_info.url} deser={deser}: unable to parse {js}: {e}"
            )
            raise

    async def raise_for_status(self, response: ClientResponse):
        if response.ok:
            return
        # metabase puts the useful part of the error in the body
        body = await response.text()
        raise ClientResponseError(
            response.request_info,
            response.history,
            status=response.status,
            message=body or response.reason,
            headers=response.headers,
        )

    async def handle_response(
        self,
        response: ClientResponse,
        deser: DeserializationStrategy,
        file: TextIO,
        top_level_list: bool = False,
    ):
        await self.raise_for_status(response)
        if file is None:
            return await self.deserialize(
                response, deser, top_level_list=top_level_list
            )
        await self.download(response, file)

    def log_request(
        self, method: str, endpoint: str, params: Optional[Dict[AnyStr, Any]] = None
    ):
        if logger().isEnabledFor(logging.DEBUG):
            sanitized_headers = {
                k: (v if k.lower() not in _SENSITIVE_HEADERS else "<redacted>")
                for k, v in self.headers.items()
            }
            logger().debug(
                f"{method} {self.uri}{endpoint}, headers={sanitized_headers}, params={params}"
            )

    async def request(
        self,
        method: str,
        endpoint: AnyStr,
        params: Optional[Dict[AnyStr, Any]] = None,
        body: Optional[Any] = None,
        deser: Optional[DeserializationStrategy] = None,
        file: Optional[TextIO] = None,
        top_level_list: bool = False,
    ):
        async with ClientSession(middlewares=(retry_middleware,)) as session:
            self.log_request(method, endpoint, params)
            async with session.request(
                method,
                f"{self.uri}{endpoint}",
                headers=self.headers,
                json=body,
                params=params,
                ssl=False,
            ) as response:
                return await self.handle_response(
                    response, deser, file, top_level_list=top_level_list
                )

    async def get(
        self,
        endpoint: AnyStr,
        params: Dict[AnyStr, AnyStr] = None,
        deser: Optional[DeserializationStrategy] = None,
        file: Optional[TextIO] = None,
        top_level_list: bool = False,
    ):
        return await self.request(
            "GET",
            endpoint,
            params=params,
            deser=deser,
            file=file,
            top_level_list=top_level_list,
        )

    async def post(
        self,
        endpoint: AnyStr,
        body: Optional[Any] = None,
        deser: Optional[DeserializationStrategy] = None,
        top_level_list: bool = False,
    ):
        return await self.request(
            "POST", endpoint, body=body, deser=deser, top_level_list=top_level_list
        )

    async def put(
        self,
        endpoint: AnyStr,
        body: Optional[Any] = None,
        deser: Optional[DeserializationStrategy] = None,
    ):
        return await self.request("PUT", endpoint, body=body, deser=deser)

    async def delete(self, endpoint: AnyStr):
        return await self.request("DELETE", endpoint)


class MetabaseAsyncHttpClient(AsyncHttpClient):
    """Session authenticated client. An api key, when configured, is sent as
    ``X-API-KEY`` and no session is created."""

    def __init__(self):
        metabase = settings.instance().metabase
        if metabase is None or metabase.uri is None:
            raise RuntimeError("metabase.uri is required")

        self.username = metabase.username
        self.password = metabase.password
        self.api_key = metabase.api_key
        if self.api_key is None and (self.username is None or self.password is None):
            raise RuntimeError(
                f"uri={metabase.uri} requires either api_key or username and password"
            )
        super().__init__(
            metabase.uri, _session_tokens.get((metabase.uri, self.username))
        )

    def update_headers(self):
        if self.api_key is not None:
            self.headers["X-API-KEY"] = self.api_key
        elif self.token is not None:
            self.headers["X-Metabase-Session"] = self.token
        else:
            self.headers.pop("X-Metabase-Session", None)

    async def authenticate(self) -> str:
        self.token = None
        self.update_headers()
        logger().info(f"Authenticating with Metabase at {self.uri} as {self.username}")
        result = await super().request(
            "POST",
            "/api/session",
            body={"username": self.username, "password": self.password},
        )
        self.token = result["id"]
        _session_tokens[(self.uri, self.username)] = self.token
        self.update_headers()
        return self.token

    async def ensure_authenticated(self):
        if self.api_key is None and self.token is None:
            await self.authenticate()

    async def request(self, method: str, endpoint: AnyStr, **kw):
        await self.ensure_authenticated()
        try:
            return await super().request(method, endpoint, **kw)
        except ClientResponseError as e:
            if e.status != HTTPStatus.UNAUTHORIZED or self.api_key is not None:
                raise
            logger().info(f"Session rejected on {method} {endpoint}, re-authenticating")
            _session_tokens.pop((self.uri, self.username), None)
            await self.authenticate()
            return await super().request(method, endpoint, **kw)
