"""
Prompt construction and response recovery.

The turn prompt is a contract with the model: it asks for a single JSON object
``{"thinking": {...}, "topics": [...], "answer": "..."}``. ``recover_response``
is the other half of that contract and degrades to plain text when the model
does not comply.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .exceptions import MalformedResponse
from .models import ConversationContext, Message, Sender

logger = logging.getLogger("silicon_talk")

APP_NAME = "AI Talk"
GENERIC_USER_NAME = "ユーザー"
EMPTY_RESPONSE_FALLBACK = "申し訳ございません。応答を生成できませんでした。"

TOPIC_VOCABULARY = (
    "映画",
    "プログラミング",
    "寿司のネタ",
    "人生相談",
    "料理",
    "音楽",
    "スポーツ",
    "旅行",
    "仕事",
    "趣味",
    "勉強",
    "健康",
    "家族",
    "友達",
    "ペット",
    "ゲーム",
    "読書",
    "アニメ",
    "漫画",
    "悪巧み",
    "愚痴",
    "その他",
)

THINKING_FIELDS = (
    "満足度の推測",
    "ユーザーの状況の推測",
    "ユーザーの性格の推測",
    "エージェントへの要求",
)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def display_user_name(context: ConversationContext) -> str:
    return f"{context.user_name}さん" if context.user_name else GENERIC_USER_NAME


def render_history(history: Sequence[Message], user_label: str) -> str:
    lines = []
    for message in history:
        if message.sender is Sender.SYSTEM:
            continue
        speaker = user_label if message.sender is Sender.USER else "AI"
        lines.append(f"{speaker}: {message.display_text}")
    return "\n".join(lines)


def _response_format_example() -> str:
    thinking = ", ".join(f'"{name}": "{name}内容"' for name in THINKING_FIELDS)
    return (
        f'{{ "thinking": {{ {thinking} }}, '
        '"topics": ["トピック1", "トピック2"], "answer": "応答内容" }'
    )


def build_turn_prompt(
    message: str,
    context: ConversationContext,
    history: Sequence[Message],
    summary: str = "",
    history_turns: int = 10,
) -> str:
    """Build the instruction for one turn."""
    user_name = display_user_name(context)
    topics = context.sorted_topics()
    topics_text = f"これまでの話題: {', '.join(topics)}" if topics else ""
    summary_text = f"\n\nこれまでの会話の要約:\n{summary}" if summary else ""

    recent = list(history)[-history_turns:]
    rendered = render_history(recent, user_name)
    history_text = f"\n\nこれまでの会話履歴:\n{rendered}" if rendered else ""

    vocabulary = "、".join(TOPIC_VOCABULARY)
    return (
        f"あなたは{APP_NAME}という対話アプリケーションのAIエージェントです。"
        f"{user_name}と自然な日本語で会話してください。"
        "もっとも最近の発言の意図に合わせて、自然な応答をします。"
        "ユーザーが質問を望んでいない場合は共感を示すに留めたり、話題を変えたりします。"
        "ユーザーが書き込んでいないことを決めつけて書かないようにします。\n\n"
        f"{topics_text}{summary_text}{history_text}\n\n"
        "現在の会話:\n"
        f"{user_name}: {message}\n\n"
        f"AIエージェントとして、上記の会話履歴を参考に、{user_name}の現在のメッセージ「{message}」に対して、"
        "これまでの会話でAIエージェントの応答に対するユーザーの満足度の推測、ユーザーの状況の推測、"
        "ユーザーの性格の推測、エージェントへの要求を思考し、応答してください。"
        "情報が不足していても、大胆に推測を交えて応答する方が満足してもらえる可能性が高いです。\n"
        "また、直近の話題から関連するトピックを推定してください。"
        f"トピックは以下のようなカテゴリから選択してください：{vocabulary}。\n"
        '*出力はJSON形式とします。改行文字は"\\n"としてエスケープしてください。*、'
        f"{_response_format_example()}としてください。"
    )


def build_summary_prompt(
    history: Sequence[Message],
    previous_summary: str,
    context: ConversationContext,
) -> str:
    """Ask the model to fold the history into a single rolling summary."""
    user_name = display_user_name(context)
    previous = f"これまでの要約:\n{previous_summary}\n\n" if previous_summary else ""
    return (
        f"以下は{APP_NAME}での{user_name}とAIエージェントの会話です。\n\n"
        f"{previous}"
        f"会話履歴:\n{render_history(history, user_name)}\n\n"
        "これまでの要約の内容をすべて含めたうえで、会話全体を簡潔に要約してください。"
        "ユーザーの名前、好み、状況、依頼事項など、今後の会話に必要な情報を優先してください。\n"
        f"トピックは以下のカテゴリから選択してください：{'、'.join(TOPIC_VOCABULARY)}。\n"
        '*出力はJSON形式とします。改行文字は"\\n"としてエスケープしてください。*、'
        '{ "summary": "要約内容", "topics": ["トピック1", "トピック2"] }としてください。'
    )


def strip_code_fence(text: str) -> str:
    """Remove a leading ```json / ``` fence and its trailing ``` if present."""
    clean = (text or "").strip()
    if clean.startswith("```"):
        clean = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", clean, count=1), count=1)
    return clean


def parse_envelope(text: str) -> dict[str, Any]:
    """Parse a model response as a JSON object or raise ``MalformedResponse``."""
    clean = strip_code_fence(text)
    if not clean:
        raise MalformedResponse("empty response")
    try:
        parsed = json.loads(clean, strict=False)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"response is not JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponse(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


def string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item.strip()]


@dataclass(frozen=True)
class RecoveredResponse:
    display_text: str
    full_response: str
    is_json: bool
    topics: list[str] = field(default_factory=list)
    thinking: dict[str, Any] = field(default_factory=dict)


def recover_response(raw: str) -> RecoveredResponse:
    """Project a raw model response onto display text plus metadata."""
    try:
        parsed = parse_envelope(raw)
    except MalformedResponse as exc:
        logger.debug("[SiliconTalk Recovery] Falling back to plain text: %s", exc)
        text = (raw or "").strip() or EMPTY_RESPONSE_FALLBACK
        return RecoveredResponse(display_text=text, full_response=text, is_json=False)

    answer = parsed.get("answer")
    if not isinstance(answer, str) or not answer.strip():
        answer = (raw or "").strip() or EMPTY_RESPONSE_FALLBACK
    thinking = parsed.get("thinking")
    return RecoveredResponse(
        display_text=answer,
        full_response=json.dumps(parsed, ensure_ascii=False, indent=2),
        is_json=True,
        topics=string_list(parsed.get("topics")),
        thinking=thinking if isinstance(thinking, dict) else {},
    )
