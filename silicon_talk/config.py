"""Runtime configuration with ``SILICON_TALK_*`` environment overrides."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from .exceptions import ConfigError

logger = logging.getLogger("silicon_talk")

DEFAULT_LANGUAGE = "ja"
DEFAULT_SPEECH_LOCALE = "ja-JP"
POLL_INTERVAL_SECONDS = 3.0
SENT_STAGE_DELAY_SECONDS = 1.0
SUMMARY_EVERY_AI_TURNS = 4
HISTORY_KEEP_AFTER_SUMMARY = 8
PROMPT_HISTORY_TURNS = 10
STREAM_FIRST_CHUNK_TIMEOUT_SECONDS = 25.0
STREAM_CHUNK_IDLE_TIMEOUT_SECONDS = 12.0

ENV_PREFIX = "SILICON_TALK_"
_ENV_FIELDS = {
    "LANGUAGE": "language",
    "SPEECH_LOCALE": "speech_locale",
    "POLL_INTERVAL": "poll_interval_seconds",
    "SENT_DELAY": "sent_stage_delay_seconds",
    "SUMMARY_EVERY": "summary_every_ai_turns",
    "HISTORY_KEEP": "history_keep_after_summary",
    "PROMPT_HISTORY": "prompt_history_turns",
    "STREAMING": "streaming",
    "FIRST_CHUNK_TIMEOUT": "first_chunk_timeout_seconds",
    "CHUNK_IDLE_TIMEOUT": "chunk_idle_timeout_seconds",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class TalkConfig:
    language: str = DEFAULT_LANGUAGE
    speech_locale: str = DEFAULT_SPEECH_LOCALE
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    sent_stage_delay_seconds: float = SENT_STAGE_DELAY_SECONDS
    summary_every_ai_turns: int = SUMMARY_EVERY_AI_TURNS
    history_keep_after_summary: int = HISTORY_KEEP_AFTER_SUMMARY
    prompt_history_turns: int = PROMPT_HISTORY_TURNS
    streaming: bool = True
    first_chunk_timeout_seconds: float = STREAM_FIRST_CHUNK_TIMEOUT_SECONDS
    chunk_idle_timeout_seconds: float = STREAM_CHUNK_IDLE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.language.strip():
            raise ConfigError("language must not be empty")
        for name in (
            "poll_interval_seconds",
            "first_chunk_timeout_seconds",
            "chunk_idle_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.sent_stage_delay_seconds < 0:
            raise ConfigError("sent_stage_delay_seconds must be >= 0")
        for name in ("summary_every_ai_turns", "history_keep_after_summary", "prompt_history_turns"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> TalkConfig:
        """Build a config from defaults, ``SILICON_TALK_*`` variables, then explicit overrides."""
        env = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        values: dict[str, Any] = {}
        for suffix, name in _ENV_FIELDS.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is None or raw.strip() == "":
                continue
            values[name] = _coerce(ENV_PREFIX + suffix, raw.strip(), types[name])
        if values:
            logger.debug("[SiliconTalk Config] Environment overrides: %s", sorted(values))
        return replace(cls(), **{**values, **overrides})


def _coerce(variable: str, raw: str, annotation: str) -> Any:
    try:
        if annotation == "bool":
            lowered = raw.lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"expected one of {sorted(_TRUE_VALUES | _FALSE_VALUES)}")
        if annotation == "int":
            return int(raw)
        if annotation == "float":
            return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{variable}={raw!r} is invalid: {exc}") from exc
    return raw


def resolve_log_level(level: str | int, fallback: int = logging.WARNING) -> int:
    """Map ``"debug"``/``"INFO"``/``"10"``/``10`` to a logging level, warning on junk."""
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        if level.isdigit():
            return int(level)
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    logger.warning(
        "[SiliconTalk Config] Unsupported log level '%s'; falling back to %s.",
        level,
        logging.getLevelName(fallback),
    )
    return fallback
