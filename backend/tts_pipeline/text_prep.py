from __future__ import annotations

import re
from dataclasses import dataclass

MAX_SCRIPT_CHARS = 5000

_PAUSE_MARKER = re.compile(r"\[pause\s*\d*s?\]", re.IGNORECASE)
_SPEAKER1_LABEL = re.compile(r"Speaker1\s*:", re.IGNORECASE)
_SPEAKER2_LABEL = re.compile(r"Speaker2\s*:", re.IGNORECASE)
_SPEAKER_LABEL_BREAK = re.compile(r"\s*(Speaker[12]\s*:)", re.IGNORECASE)


@dataclass(frozen=True)
class PreparedScript:
    text: str
    is_dialogue: bool
    truncated: bool


def is_dialogue_script(text: str) -> bool:
    return bool(_SPEAKER1_LABEL.search(text)) and bool(_SPEAKER2_LABEL.search(text))


def prepare_script(text: str, *, monologue: bool = False, max_chars: int = MAX_SCRIPT_CHARS) -> PreparedScript:
    normalized = _PAUSE_MARKER.sub("...", str(text or "").replace("\r\n", "\n")).strip()
    dialogue = not monologue and is_dialogue_script(normalized)

    if dialogue:
        # One speaker turn per line, so the multi-speaker voice config can follow the labels.
        cleaned = _SPEAKER_LABEL_BREAK.sub(r"\n\1", normalized)
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    else:
        cleaned = re.sub(r"\s{2,}", " ", re.sub(r"\n+", " ", normalized)).strip()

    limit = max(1, int(max_chars))
    truncated = len(cleaned) > limit
    if truncated:
        cleaned = cleaned[:limit].strip()
    if not cleaned:
        raise ValueError("Empty text for TTS.")
    return PreparedScript(text=cleaned, is_dialogue=dialogue, truncated=truncated)
