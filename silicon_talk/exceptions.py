"""
Error taxonomy for SiliconTalk.

Every failure at the inference-engine or speech boundary is expressed as a
``SiliconTalkError`` subclass so the turn orchestrator can catch them in one
place and settle the turn with a chat bubble instead of crashing.
"""

from __future__ import annotations

import importlib
from types import ModuleType

APPLE_FM_INSTALL_HINT = (
    "Install the Apple Foundation Models SDK manually "
    "(macOS 26+ with Apple Intelligence enabled), then retry."
)


class SiliconTalkError(RuntimeError):
    """Base class for all SiliconTalk errors."""


class EngineUnavailable(SiliconTalkError):
    """No inference engine is present in the host environment."""


class DownloadRequired(SiliconTalkError):
    """The model must be downloaded before it can answer (needs a user action)."""


class DownloadInProgress(SiliconTalkError):
    """The model is still being downloaded."""

    def __init__(self, message: str = "model download in progress", progress: float | None = None):
        super().__init__(message)
        self.progress = progress


class EngineError(SiliconTalkError):
    """Opaque failure reported by the inference engine."""


class MalformedResponse(SiliconTalkError):
    """The engine answered with text that is not the expected JSON envelope."""


class RecognizerError(SiliconTalkError):
    """The speech channel failed."""


class ConfigError(SiliconTalkError, ValueError):
    """A configuration value could not be parsed or is out of range."""


def require_apple_fm(context: str) -> ModuleType:
    """Import ``apple_fm_sdk`` or raise ``EngineUnavailable`` with install guidance."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError as exc:
        raise EngineUnavailable(
            f"[SiliconTalk] {context} requires 'apple-fm-sdk', which is not installed. "
            f"{APPLE_FM_INSTALL_HINT}"
        ) from exc
