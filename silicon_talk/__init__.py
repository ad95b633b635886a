"""
SiliconTalk: a conversational front-end for an on-device language model.

The turn orchestrator drives an injected inference engine (Apple Foundation
Models by default) one turn at a time, recovers structured metadata from the
model's JSON answers, keeps a rolling summary of older history, and merges
typed and spoken input into a single pipeline.
"""

from .config import TalkConfig
from .context import extract_name, merge_topics
from .exceptions import (
    ConfigError,
    DownloadInProgress,
    DownloadRequired,
    EngineError,
    EngineUnavailable,
    MalformedResponse,
    RecognizerError,
    SiliconTalkError,
)
from .gateway import InferenceGateway
from .models import (
    ConversationContext,
    EphemeralStatus,
    ModelStatus,
    PlainMessage,
    Sender,
    StatusKind,
    StructuredMessage,
    TurnStage,
)
from .monitor import AvailabilityMonitor
from .orchestrator import TurnOrchestrator
from .speech import InputArbiter
# Note: the Apple Foundation Models binding lives in .protocols and imports the SDK lazily.

__all__ = [
    "AvailabilityMonitor",
    "ConfigError",
    "ConversationContext",
    "DownloadInProgress",
    "DownloadRequired",
    "EngineError",
    "EngineUnavailable",
    "EphemeralStatus",
    "InferenceGateway",
    "InputArbiter",
    "MalformedResponse",
    "ModelStatus",
    "PlainMessage",
    "RecognizerError",
    "Sender",
    "SiliconTalkError",
    "StatusKind",
    "StructuredMessage",
    "TalkConfig",
    "TurnOrchestrator",
    "TurnStage",
    "extract_name",
    "merge_topics",
]
