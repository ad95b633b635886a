"""Context Tracker: pure transforms over raw user text and topic sets."""

from __future__ import annotations

import re
from collections.abc import Iterable

_NAME_CHARS = r"[ぁ-ゖァ-ヺー一-龯々]"

# "<self-reference>は<name>です": the name is the 2-4 character token right
# before the identification marker.
NAME_PATTERN = re.compile(
    r"(?:私|わたし|あたし|僕|ぼく|俺|おれ|自分|名前)(?:の名前)?は\s*"
    rf"({_NAME_CHARS}{{2,4}})"
    r"(?:です|と申します|といいます|って言います)"
)


def extract_name(text: str) -> str | None:
    """Return the first self-introduced name in ``text``, or None."""
    match = NAME_PATTERN.search(text or "")
    return match.group(1) if match else None


def merge_topics(existing: Iterable[str], incoming: Iterable[object] | None) -> set[str]:
    """Union of both topic collections; blank and non-string entries are dropped."""
    merged = set(existing)
    for topic in incoming or ():
        if isinstance(topic, str) and topic.strip():
            merged.add(topic.strip())
    return merged
