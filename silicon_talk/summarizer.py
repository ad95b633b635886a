"""Rolling history summarization through the inference gateway."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from .exceptions import MalformedResponse
from .gateway import InferenceGateway
from .models import ConversationContext, Message
from .prompts import build_summary_prompt, parse_envelope, string_list, strip_code_fence

logger = logging.getLogger("silicon_talk")


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    topics: list[str] = field(default_factory=list)


class Summarizer:
    """Compress conversation history into a single free-text summary.

    The new summary is asked to contain everything the previous one did, so
    it replaces it outright. Gateway errors propagate to the caller.
    """

    def __init__(self, gateway: InferenceGateway) -> None:
        self.gateway = gateway

    async def summarize(
        self,
        history: Sequence[Message],
        previous_summary: str,
        context: ConversationContext,
    ) -> SummaryResult:
        logger.info(
            "[SiliconTalk Summary] Compacting %d history entries into the rolling summary...",
            len(history),
        )
        start = time.perf_counter()
        raw = await self.gateway.prompt(build_summary_prompt(history, previous_summary, context))
        try:
            parsed = parse_envelope(raw)
            summary = parsed.get("summary")
            if not isinstance(summary, str) or not summary.strip():
                raise MalformedResponse("summary field missing")
            result = SummaryResult(summary.strip(), string_list(parsed.get("topics")))
        except MalformedResponse as exc:
            logger.debug("[SiliconTalk Summary] Using raw text as summary: %s", exc)
            result = SummaryResult(strip_code_fence(raw) or previous_summary)

        logger.info(
            "[SiliconTalk Summary] Summary refreshed in %.3fs (%d chars, %d topics).",
            time.perf_counter() - start,
            len(result.summary),
            len(result.topics),
        )
        return result
