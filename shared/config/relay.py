"""
Relay configuration loader.

Resolution order (later wins):
  built-in defaults
  -> shared/config/relay.json (optional overlay, schema-validated)
  -> environment variables (.env is loaded by the entrypoint)

Design rules:
- Import-safe (no side effects)
- Secrets are never logged
- Any missing required key or malformed value raises ConfigError; the
  runtime treats that as fatal at startup
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from shared.config.errors import ConfigError
from shared.logging.logger import get_logger

log = get_logger("shared.config.relay")

_CONFIG_PATH = Path(__file__).parent / "relay.json"


# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

@dataclass
class TwitchSettings:
    bot_username: str
    oauth_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


@dataclass
class KickSettings:
    channel_id: int
    access_token: str = ""
    refresh_token: str = ""
    client_id: str = ""
    client_secret: str = ""

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


@dataclass
class RateLimitSettings:
    max_per_minute: int = 20
    min_interval_seconds: float = 1.0
    duplicate_window_seconds: float = 10.0
    window_seconds: float = 60.0


@dataclass
class SupervisorSettings:
    max_reconnect_attempts: int = 10
    backoff_floor_seconds: float = 5.0
    backoff_ceiling_seconds: float = 60.0
    backoff_multiplier: float = 1.5
    health_check_seconds: float = 30.0
    token_refresh_seconds: float = 50 * 60.0


@dataclass
class RelayTemplates:
    ban: str = '{channel} banned @{user}. Last words: "{text}"'
    timeout: str = '{channel} timed out @{user} for {duration}s. Last words: "{text}"'
    delete: str = '{channel} deleted a message from @{user}: "{text}"'
    ban_notice: str = 'Ban notice in {channel}: "{text}"'
    blocked_placeholder: str = "[message hidden]"
    no_data: str = "no data"


@dataclass
class RelayConfig:
    source_channel: str
    target_channels: List[str]
    twitch: TwitchSettings
    kick: Optional[KickSettings] = None
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    templates: RelayTemplates = field(default_factory=RelayTemplates)
    memory_capacity: int = 200
    queue_capacity: int = 500
    strict_mode: bool = False
    relay_ban_notices: bool = False
    word_filter_path: Optional[str] = None
    snapshot_path: Optional[str] = None


# ------------------------------------------------------------
# JSON overlay
# ------------------------------------------------------------

_NUMBER = {"type": "number", "exclusiveMinimum": 0}

RELAY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "rate_limits": {
            "type": "object",
            "properties": {
                "max_per_minute": {"type": "integer", "minimum": 1},
                "min_interval_seconds": {"type": "number", "minimum": 0},
                "duplicate_window_seconds": {"type": "number", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "supervisor": {
            "type": "object",
            "properties": {
                "max_reconnect_attempts": {"type": "integer", "minimum": 1},
                "backoff_floor_seconds": _NUMBER,
                "backoff_ceiling_seconds": _NUMBER,
                "backoff_multiplier": {"type": "number", "minimum": 1},
                "health_check_seconds": _NUMBER,
                "token_refresh_seconds": _NUMBER,
            },
            "additionalProperties": False,
        },
        "templates": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "memory_capacity": {"type": "integer", "minimum": 1},
        "queue_capacity": {"type": "integer", "minimum": 1},
        "strict_mode": {"type": "boolean"},
        "relay_ban_notices": {"type": "boolean"},
    },
}


def _load_overlay(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.debug(f"relay.json not found at {path}; using defaults")
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read relay config {path}: {e}") from e

    validator = Draft7Validator(RELAY_SCHEMA)
    errors = sorted(validator.iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        for err in errors:
            loc = "/".join(str(p) for p in err.path)
            log.error(f"relay config validation error at '{loc}': {err.message}")
        raise ConfigError(f"relay config {path} failed validation ({len(errors)} error(s))")

    return raw


# ------------------------------------------------------------
# Env helpers
# ------------------------------------------------------------

def _env_str(env: Mapping[str, str], key: str) -> str:
    return (env.get(key) or "").strip()


def _env_number(env: Mapping[str, str], key: str, default, cast):
    raw = _env_str(env, key)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a {cast.__name__}, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {raw!r}")
    return value


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _env_str(env, key).lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _split_channels(raw: str) -> List[str]:
    channels = []
    for part in raw.split(","):
        name = part.strip().lstrip("#").lower()
        if name and name not in channels:
            channels.append(name)
    return channels


# ------------------------------------------------------------
# Section loaders
# ------------------------------------------------------------

def _load_twitch(env: Mapping[str, str]) -> TwitchSettings:
    settings = TwitchSettings(
        bot_username=_env_str(env, "TWITCH_BOT_USERNAME").lower(),
        oauth_token=_env_str(env, "TWITCH_OAUTH_TOKEN"),
        client_id=_env_str(env, "TWITCH_CLIENT_ID"),
        client_secret=_env_str(env, "TWITCH_CLIENT_SECRET"),
        refresh_token=_env_str(env, "TWITCH_REFRESH_TOKEN"),
    )

    if not settings.bot_username:
        raise ConfigError("Missing required env var: TWITCH_BOT_USERNAME")

    if not settings.oauth_token and not (settings.client_id and settings.client_secret):
        raise ConfigError(
            "TWITCH_OAUTH_TOKEN or the pair TWITCH_CLIENT_ID + TWITCH_CLIENT_SECRET is required"
        )

    return settings


def _load_kick(env: Mapping[str, str]) -> Optional[KickSettings]:
    raw_channel = _env_str(env, "KICK_CHANNEL_ID")
    if not raw_channel:
        return None

    try:
        channel_id = int(raw_channel)
    except ValueError as e:
        raise ConfigError(f"KICK_CHANNEL_ID must be numeric, got {raw_channel!r}") from e

    settings = KickSettings(
        channel_id=channel_id,
        access_token=_env_str(env, "KICK_ACCESS_TOKEN"),
        refresh_token=_env_str(env, "KICK_REFRESH_TOKEN"),
        client_id=_env_str(env, "KICK_CLIENT_ID"),
        client_secret=_env_str(env, "KICK_CLIENT_SECRET"),
    )

    if not settings.access_token and not settings.can_refresh:
        raise ConfigError(
            "KICK_CHANNEL_ID is set but neither KICK_ACCESS_TOKEN nor "
            "KICK_CLIENT_ID + KICK_CLIENT_SECRET + KICK_REFRESH_TOKEN are provided"
        )

    return settings


def _load_rate_limits(overlay: Dict[str, Any], env: Mapping[str, str]) -> RateLimitSettings:
    base = RateLimitSettings(**overlay.get("rate_limits", {}))
    base.max_per_minute = _env_number(env, "RELAY_MAX_PER_MINUTE", base.max_per_minute, int)
    base.min_interval_seconds = _env_number(
        env, "RELAY_MIN_INTERVAL_SECONDS", base.min_interval_seconds, float
    )
    if base.max_per_minute <= 0:
        raise ConfigError("RELAY_MAX_PER_MINUTE must be positive")
    return base


def _load_supervisor(overlay: Dict[str, Any], env: Mapping[str, str]) -> SupervisorSettings:
    base = SupervisorSettings(**overlay.get("supervisor", {}))
    base.max_reconnect_attempts = _env_number(
        env, "RELAY_MAX_RECONNECT_ATTEMPTS", base.max_reconnect_attempts, int
    )
    base.health_check_seconds = _env_number(
        env, "RELAY_HEALTH_CHECK_SECONDS", base.health_check_seconds, float
    )
    base.token_refresh_seconds = _env_number(
        env, "RELAY_TOKEN_REFRESH_SECONDS", base.token_refresh_seconds, float
    )

    if base.max_reconnect_attempts <= 0:
        raise ConfigError("RELAY_MAX_RECONNECT_ATTEMPTS must be positive")
    if base.backoff_ceiling_seconds < base.backoff_floor_seconds:
        raise ConfigError("backoff_ceiling_seconds must be >= backoff_floor_seconds")
    return base


def _load_templates(overlay: Dict[str, Any]) -> RelayTemplates:
    raw = overlay.get("templates", {})
    known = set(RelayTemplates.__dataclass_fields__)
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown relay template(s): {', '.join(sorted(unknown))}")

    templates = RelayTemplates(**raw)
    for name in ("ban", "timeout", "delete", "ban_notice"):
        try:
            getattr(templates, name).format(channel="", user="", duration=0, text="")
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigError(f"Relay template {name!r} is malformed: {e}") from e
    return templates


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

def load_relay_config(
    env: Optional[Mapping[str, str]] = None,
    path: Optional[Path] = None,
) -> RelayConfig:
    env = env if env is not None else os.environ
    overlay = _load_overlay(Path(path) if path else _CONFIG_PATH)

    source_channel = _env_str(env, "SOURCE_CHANNEL").lstrip("#").lower()
    if not source_channel:
        raise ConfigError("Missing required env var: SOURCE_CHANNEL")

    target_channels = _split_channels(
        _env_str(env, "TARGET_CHANNELS") or _env_str(env, "TARGET_CHANNEL")
    )
    if not target_channels:
        raise ConfigError("Missing required env var: TARGET_CHANNELS (or TARGET_CHANNEL)")

    config = RelayConfig(
        source_channel=source_channel,
        target_channels=target_channels,
        twitch=_load_twitch(env),
        kick=_load_kick(env),
        rate_limits=_load_rate_limits(overlay, env),
        supervisor=_load_supervisor(overlay, env),
        templates=_load_templates(overlay),
        memory_capacity=_env_number(
            env, "RELAY_MEMORY_CAPACITY", overlay.get("memory_capacity", 200), int
        ),
        queue_capacity=_env_number(
            env, "RELAY_QUEUE_CAPACITY", overlay.get("queue_capacity", 500), int
        ),
        strict_mode=_env_bool(env, "WORD_FILTER_STRICT", overlay.get("strict_mode", False)),
        relay_ban_notices=_env_bool(
            env, "RELAY_BAN_NOTICES", overlay.get("relay_ban_notices", False)
        ),
        word_filter_path=_env_str(env, "WORD_FILTER_PATH") or None,
        snapshot_path=_env_str(env, "RELAY_SNAPSHOT_PATH") or None,
    )

    if config.memory_capacity <= 0 or config.queue_capacity <= 0:
        raise ConfigError("RELAY_MEMORY_CAPACITY and RELAY_QUEUE_CAPACITY must be positive")

    log.info(
        f"[BOOT] Relay config resolved: source=#{config.source_channel} "
        f"targets={['#' + c for c in config.target_channels]} "
        f"kick={'ENABLED' if config.kick else 'DISABLED'} "
        f"strict_mode={config.strict_mode}"
    )
    log.debug(
        "[BOOT] Twitch credentials resolved: "
        f"token={'SET' if config.twitch.oauth_token else 'MISSING'}, "
        f"client_id={'SET' if config.twitch.client_id else 'MISSING'}, "
        f"refresh={'SET' if config.twitch.refresh_token else 'MISSING'}"
    )

    return config
