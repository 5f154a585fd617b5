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
from pydantic import (
    Field,
    HttpUrl,
    AfterValidator,
    BaseModel,
    ConfigDict,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import (
    Optional,
    Union,
    Annotated,
    Self,
    List,
    Dict,
    Any,
    Set,
    Callable,
)
from metabaseai.config.tools import ToolType
from metabaseai.db.operations import OperationType
from enum import auto, StrEnum
from pathlib import Path
from yaml import safe_load, add_representer, dump
from functools import reduce
from operator import ior
from contextvars import ContextVar
from os import environ
from importlib.util import find_spec
from pydantic import field_serializer

ALL_TOOLS = reduce(ior, ToolType)


def _resolve_tools_settings(server_mode: Union[ToolType, int, str]) -> ToolType:
    if isinstance(server_mode, str):
        try:
            server_mode = reduce(
                ior,
                [
                    ToolType[m.strip().upper()]
                    for m in server_mode.replace("|", ",").split(",")
                ],
            )
        except KeyError:
            return _resolve_tools_settings(int(server_mode))

    if isinstance(server_mode, int):
        return ToolType(server_mode)

    return server_mode


class Tools(BaseModel):
    server_mode: Annotated[
        Optional[Union[ToolType, int, str]], AfterValidator(_resolve_tools_settings)
    ] = Field(default=ALL_TOOLS)
    model_config = ConfigDict(validate_assignment=True, use_enum_values=True)

    @field_serializer("server_mode")
    def serialize_server_mode(self, server_mode: ToolType):
        return ",".join(m.name for m in ToolType if m & server_mode)


def _resolve_metabase_uri(uri: Union[str, HttpUrl]) -> str:
    if isinstance(uri, str):
        uri = HttpUrl(uri)
    return str(uri).rstrip("/")


def _resolve_token_file(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    return (
        Path(token[1:]).expanduser().read_text().strip()
        if token.startswith("@")
        else token
    )


def _require_prefix(prefix: str) -> str:
    if not prefix.strip():
        raise ValueError("name_prefix must not be empty")
    return prefix


class Metrics(BaseModel):
    enabled: Optional[bool] = True
    port: Optional[int] = 9091
    model_config = ConfigDict(validate_assignment=True)


class HttpRetry(BaseModel):
    """Configuration for HTTP retry behavior with exponential backoff"""

    max_retries: Optional[int] = Field(
        default=3,
        description="Maximum number of retry attempts for rate-limited requests",
    )
    initial_delay: Optional[float] = Field(
        default=1.0, description="Initial delay in seconds before first retry"
    )
    max_delay: Optional[float] = Field(
        default=60.0, description="Maximum delay in seconds between retries"
    )
    backoff_multiplier: Optional[float] = Field(
        default=2.0, description="Multiplier for exponential backoff"
    )
    model_config = ConfigDict(validate_assignment=True)


class CredentialRecovery(BaseModel):
    """Reads unmasked connection details from Metabase's own application
    database. Only enable this where the Metabase service account is allowed
    to see stored database passwords."""

    enabled: Optional[bool] = False
    metadata_database_id: Optional[int] = Field(
        default=None,
        description="Metabase database id pointing at the Metabase application db",
    )
    model_config = ConfigDict(validate_assignment=True)


class DdlEndpoints(BaseModel):
    primary: Optional[str] = "/api/action/execute"
    secondary: Optional[str] = "/api/dataset"
    model_config = ConfigDict(validate_assignment=True)


class Metabase(BaseModel):
    uri: Annotated[Union[str, HttpUrl], AfterValidator(_resolve_metabase_uri)]
    username: Optional[str] = None
    raw_password: Optional[str] = Field(default=None, alias="password")
    raw_api_key: Optional[str] = Field(default=None, alias="api_key")
    http_retry: Optional[HttpRetry] = Field(default_factory=HttpRetry)
    credential_recovery: Optional[CredentialRecovery] = Field(
        default_factory=CredentialRecovery
    )
    masked_password_sentinels: Optional[List[str]] = Field(
        default_factory=lambda: ["**MetabasePass**"]
    )
    ddl_endpoints: Optional[DdlEndpoints] = Field(default_factory=DdlEndpoints)
    ambiguous_success_markers: Optional[List[str]] = Field(
        default_factory=lambda: ["Select statement did not produce a ResultSet"]
    )
    metrics: Optional[Metrics] = None
    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    @property
    def password(self) -> Optional[str]:
        if v := getattr(self, "_password_resolved", None):
            return v
        if self.raw_password is not None and self.raw_password.startswith("@"):
            self._password_resolved = _resolve_token_file(self.raw_password)
            return self._password_resolved
        return self.raw_password

    @password.setter
    def password(self, v: str):
        self.raw_password = v
        self._password_resolved = None

    @property
    def api_key(self) -> Optional[str]:
        return _resolve_token_file(self.raw_api_key)

    @property
    def prometheus_metrics_enabled(self) -> bool:
        return self.metrics is not None and self.metrics.enabled

    @property
    def prometheus_metrics_port(self) -> int | None:
        return self.metrics.port if self.metrics is not None else None


class PolicyConfig(BaseModel):
    name_prefix: Annotated[str, AfterValidator(_require_prefix)] = "claude_ai_"
    allowed_operations: Optional[Set[OperationType]] = Field(
        default_factory=lambda: set(OperationType)
    )
    require_approval: Optional[bool] = True
    dry_run: Optional[bool] = False
    max_execution_time_ms: Optional[int] = 30000
    check_drop_existence: Optional[bool] = True
    model_config = ConfigDict(validate_assignment=True)

    @field_serializer("allowed_operations")
    def serialize_allowed_operations(self, ops: Set[OperationType]):
        return sorted(str(op) for op in ops)

    @property
    def timeout(self) -> Optional[float]:
        if self.max_execution_time_ms:
            return self.max_execution_time_ms / 1000
        return None


class Connections(BaseModel):
    prefer_direct: Optional[bool] = True
    serialize_handles: Optional[bool] = True
    schema_explore_timeout: Optional[float] = Field(
        default=30.0, description="Seconds before detailed schema exploration gives up"
    )
    model_config = ConfigDict(validate_assignment=True)


class LlmProvider(StrEnum):
    anthropic = auto()
    openai = auto()


class OpenAi(BaseModel):
    api_key: Annotated[Optional[str], AfterValidator(_resolve_token_file)] = None
    model: Optional[str] = Field(default="gpt-4o")
    org: Optional[str] = Field(default=None)
    model_config = ConfigDict(validate_assignment=True)


class Anthropic(BaseModel):
    api_key: Annotated[Optional[str], AfterValidator(_resolve_token_file)] = None
    chat_model: Optional[str] = Field(default="claude-3-5-sonnet-latest")
    max_tokens: Optional[int] = 4000
    model_config = ConfigDict(validate_assignment=True)


class Llm(BaseModel):
    provider: Optional[LlmProvider] = LlmProvider.anthropic
    anthropic: Optional[Anthropic] = Field(default_factory=Anthropic)
    openai: Optional[OpenAi] = Field(default=None)
    model_config = ConfigDict(validate_assignment=True)


class Settings(BaseSettings):
    metabase: Optional[Metabase] = Field(default=None)
    policy: Optional[PolicyConfig] = Field(default_factory=PolicyConfig)
    connections: Optional[Connections] = Field(default_factory=Connections)
    llm: Optional[Llm] = Field(default=None)
    tools: Optional[Tools] = Field(default_factory=Tools)
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="METABASEAI_",
        env_extra="allow",
        use_enum_values=True,
    )

    def with_overrides(self, overrides: Dict[str, Any]) -> Self:
        def set_values(aparts: List[str], value: Any, obj: Any):
            if len(aparts) == 1 and hasattr(obj, aparts[0]):
                setattr(obj, aparts[0], value)
            elif hasattr(obj, aparts[0]):
                set_values(aparts[1:], value, getattr(obj, aparts[0]))

        for aparts, value in [
            (attr.split("."), value)
            for attr, value in overrides.items()
            if value is not None
        ]:
            set_values(aparts, value, self)

        return self


_settings: ContextVar[Settings] = ContextVar("settings", default=None)


# the default config is ~/.config/metabaseai/config.yaml, use it if it exists
def default_config() -> Path:
    _top = "metabaseai"
    if (_top := find_spec(__name__)) and _top.name:
        _top = _top.name.split(".")[0]
    return (
        Path(environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        / _top
        / "config.yaml"
    )


# configures the settings using the given config file and overwrites the global
# settings instance if force is True
def configure(cfg: Union[str, Path] = None, force=False) -> ContextVar[Settings]:
    global _settings
    if force and isinstance(_settings.get(), Settings):
        old = _settings.get()
        try:
            _settings.set(None)
            configure(cfg, force=False)
        except Exception:
            # don't replace the old if there is an issue setting the new value
            _settings.set(old)
            raise

    if isinstance(cfg, str):
        cfg = Path(cfg)

    if cfg is None:
        cfg = default_config()

    if not cfg.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)
        cfg.touch()

    with cfg.open() as f:
        s = safe_load(f)
        _settings.set(Settings.model_validate(s if s else {}))

    return _settings


# Get the current settings instance if one has been configured. If not try
# to configure it using the default config file. If that fails, create a new
# empty settings instance.
def instance() -> Settings | None:
    global _settings
    if not isinstance(_settings.get(), Settings):
        try:
            configure()  # use default config, if exists
        except FileNotFoundError:
            # no default config, create a new default one
            _settings.set(Settings())
    return _settings.get()


# runs func with a deep copy of the current settings, modified by overrides
# given as dotted attribute paths (e.g. "policy.dry_run")
async def run_with(
    func: Callable,
    overrides: Optional[Dict[str, Any]] = None,
    args: Optional[List[Any]] = None,
    kw: Optional[Dict[str, Any]] = None,
) -> Any:
    tok = _settings.set(
        instance().model_copy(deep=True).with_overrides(overrides or {})
    )
    try:
        return await func(*(args or []), **(kw or {}))
    finally:
        _settings.reset(tok)


def write_settings(
    cfg: Path = None, inst: Settings = None, dry_run: bool = False
) -> str | None:
    if cfg is None:
        cfg = default_config()

    if not isinstance(inst, Settings):
        inst = instance()

    d = inst.model_dump(
        exclude_none=True, mode="json", exclude_unset=True, by_alias=True
    )
    add_representer(
        str,
        lambda dumper, data: dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style=('"' if "@" in data else None)
        ),
    )
    if dry_run:
        return dump(d)

    if not cfg.exists() or not cfg.parent.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)

    with cfg.open("w") as f:
        dump(d, f)
