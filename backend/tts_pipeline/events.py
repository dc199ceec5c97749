from __future__ import annotations

import json
import os
import re
import time
from typing import Optional

ENGINE_NAME = "exam-tts"


def new_trace_id(prefix: str = "tts") -> str:
    return f"{prefix}_{int(time.time() * 1000):x}_{os.urandom(3).hex()}"


def normalize_trace_id(value: Optional[str]) -> str:
    token = re.sub(r"[^a-zA-Z0-9._:-]", "", str(value or "").strip())
    if token:
        return token[:96]
    return new_trace_id()


def emit_stage_event(trace_id: str, stage: str, status: str, detail: Optional[dict[str, object]] = None) -> None:
    payload: dict[str, object] = {
        "event": "synthesis_stage",
        "engine": ENGINE_NAME,
        "trace_id": trace_id,
        "stage": stage,
        "status": status,
        "ts": int(time.time() * 1000),
    }
    if detail:
        payload["detail"] = detail
    print(json.dumps(payload, ensure_ascii=True, default=str), flush=True)
