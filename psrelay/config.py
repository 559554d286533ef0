"""Application configuration: pydantic models loaded from the environment."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from psrelay.errors import ConfigError
from psrelay.logging_config import resolve_level

ENV_PREFIX = "PSRELAY_"
# psdevbot variable names; each is read only when its PSRELAY_ twin is absent.
LEGACY_ENV_PREFIX = "PSDEVBOT_"
DEFAULT_LOGIN_URL = "https://play.pokemonshowdown.com/api/login"


class ChatConfig(BaseModel):
    """Settings for the Showdown chat session."""

    server_url: str
    login_url: str = DEFAULT_LOGIN_URL
    username: str
    password: str
    queue_size: int = Field(default=100, ge=1)
    backoff_initial: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=60.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    login_timeout: float = 30.0
    join_timeout: float = 10.0
    send_interval: float = 0.6


class WebhookConfig(BaseModel):
    """Settings for the webhook HTTP server."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3030
    path: str = "/github/callback"
    secret: str
    max_body_bytes: int = 25 * 1024 * 1024
    dedup_capacity: int = Field(default=256, ge=1)


class ProjectRooms(BaseModel):
    """Rooms notified about one repository, with an optional secret override."""

    model_config = ConfigDict(extra="forbid")

    rooms: list[str] = Field(default_factory=list)
    simple_rooms: list[str] = Field(default_factory=list)
    secret: str | None = None


@dataclass(frozen=True)
class RoomTargets:
    """Resolved delivery targets for one repository."""

    rooms: tuple[str, ...]
    simple_rooms: tuple[str, ...]
    secret: str

    def __iter__(self) -> Iterator[str]:
        yield from self.rooms
        yield from self.simple_rooms


class UsernameAliases:
    """Case-insensitive mapping of GitHub logins to chat display names."""

    __slots__ = ("_map",)

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self._map: dict[str, str] = {}
        for key, value in (aliases or {}).items():
            self.insert(key, value)

    def get(self, login: str) -> str:
        """Return the alias for *login*, or *login* itself when none is set."""
        return self._map.get(login.casefold(), login)

    def insert(self, login: str, display: str) -> None:
        self._map[login.casefold()] = display

    def __len__(self) -> int:
        return len(self._map)


class RelayConfig(BaseModel):
    """Top-level configuration."""

    log_level: str = "INFO"
    chat: ChatConfig
    webhook: WebhookConfig
    default_room: str | None = None
    projects: dict[str, ProjectRooms] = Field(default_factory=dict)
    username_aliases: dict[str, str] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        resolve_level(value)
        return value.strip().upper()

    @model_validator(mode="after")
    def _require_rooms(self) -> RelayConfig:
        # An explicit project configuration counts even when it is empty.
        if not self.default_room and "projects" not in self.model_fields_set:
            msg = "At least one of PSRELAY_ROOM or PSRELAY_PROJECT_CONFIGURATION must be set"
            raise ValueError(msg)
        return self

    def all_rooms(self) -> list[str]:
        """Every room any repository may be relayed to, sorted."""
        rooms: set[str] = set()
        for project in self.projects.values():
            rooms.update(project.rooms)
            rooms.update(project.simple_rooms)
        if self.default_room:
            rooms.add(self.default_room)
        return sorted(rooms)

    def rooms_for(self, full_name: str, name: str = "") -> RoomTargets:
        """Resolve targets for a repository: ``full_name``, then ``name``, then default room."""
        for key in (full_name, name):
            project = self.projects.get(key) if key else None
            if project is not None:
                return RoomTargets(
                    rooms=tuple(project.rooms),
                    simple_rooms=tuple(project.simple_rooms),
                    secret=project.secret or self.webhook.secret,
                )
        return RoomTargets(
            rooms=(self.default_room,) if self.default_room else (),
            simple_rooms=(),
            secret=self.webhook.secret,
        )

    def all_secrets(self) -> list[str]:
        """Distinct candidate webhook secrets, global secret first."""
        secrets = [self.webhook.secret]
        for project in self.projects.values():
            if project.secret and project.secret not in secrets:
                secrets.append(project.secret)
        return secrets

    def aliases(self) -> UsernameAliases:
        return UsernameAliases(self.username_aliases)


def _lookup(environ: Mapping[str, str], key: str) -> tuple[str, str | None]:
    """Return ``(variable name, value)`` for *key*, preferring the PSRELAY_ name."""
    for prefix in (ENV_PREFIX, LEGACY_ENV_PREFIX):
        name = prefix + key
        if name in environ:
            return name, environ[name]
    return ENV_PREFIX + key, None


def _load_json(environ: Mapping[str, str], key: str) -> object:
    name, raw = _lookup(environ, key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"{name} should be valid JSON: {exc}"
        raise ConfigError(msg) from exc


def load_config(environ: Mapping[str, str] | None = None) -> RelayConfig:
    """Build a `RelayConfig` from ``PSRELAY_*`` environment variables.

    Each ``PSRELAY_X`` may instead be given as ``PSDEVBOT_X``.  Raises
    `ConfigError` on missing or invalid values.
    """
    env = os.environ if environ is None else environ

    def opt(key: str) -> str | None:
        return _lookup(env, key)[1] or None

    chat: dict[str, object] = {
        "server_url": opt("SERVER"),
        "username": opt("USER"),
        "password": opt("PASSWORD"),
    }
    for key, field in (
        ("LOGIN_URL", "login_url"),
        ("QUEUE_SIZE", "queue_size"),
        ("BACKOFF_INITIAL", "backoff_initial"),
        ("BACKOFF_MAX", "backoff_max"),
    ):
        if (value := opt(key)) is not None:
            chat[field] = value

    webhook: dict[str, object] = {"secret": opt("SECRET")}
    for key, field in (("HOST", "host"), ("PORT", "port"), ("DEDUP_CAPACITY", "dedup_capacity")):
        if (value := opt(key)) is not None:
            webhook[field] = value

    data: dict[str, object] = {
        "chat": chat,
        "webhook": webhook,
        "default_room": opt("ROOM"),
        "log_level": opt("LOG_LEVEL") or "INFO",
    }
    if (projects := _load_json(env, "PROJECT_CONFIGURATION")) is not None:
        data["projects"] = projects
    if (aliases := _load_json(env, "USERNAME_ALIASES")) is not None:
        data["username_aliases"] = aliases

    try:
        config = RelayConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise ConfigError(msg) from exc
    return config
