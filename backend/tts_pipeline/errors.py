from __future__ import annotations

import re
from typing import Any, Optional

MAX_PUBLIC_SUMMARY_ITEMS = 3
MAX_PUBLIC_SUMMARY_CHARS = 220


class TtsPipelineError(Exception):
    error_code = "TTS_PIPELINE_ERROR"
    default_message = "Speech synthesis failed."

    def __init__(self, message: str = "", *, summary: str = "", detail: Optional[dict[str, Any]] = None) -> None:
        self.message = str(message or self.default_message)
        self.summary = truncate_summary(summary or self.message)
        self.detail = dict(detail or {})
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {
            "errorCode": self.error_code,
            "error": self.message,
            "summary": self.summary,
            **self.detail,
        }


class BatchAbort(TtsPipelineError):
    """Raised when no key in the pool can serve requests; ends the whole batch."""


class NoKeysAvailable(BatchAbort):
    error_code = "TTS_NO_KEYS_AVAILABLE"
    default_message = "No active provider API keys are configured."


class AllKeysRateLimited(BatchAbort):
    error_code = "TTS_ALL_KEYS_RATE_LIMITED"
    default_message = "Every provider API key is rate limited. Try again later."


class AllKeysForbidden(BatchAbort):
    error_code = "TTS_ALL_KEYS_FORBIDDEN"
    default_message = "Every provider API key was rejected. Check the configured credentials."


class UpstreamUnknownFailure(BatchAbort):
    error_code = "TTS_UPSTREAM_FAILED"
    default_message = "The speech provider failed on every API key."


class ItemRejectedError(TtsPipelineError):
    error_code = "TTS_ITEM_REJECTED"
    default_message = "The speech provider rejected this request."

    def __init__(self, message: str = "", *, status: Optional[int] = None, **kwargs: Any) -> None:
        self.status = status
        super().__init__(message, **kwargs)


class MalformedProviderResponse(TtsPipelineError):
    error_code = "TTS_MALFORMED_RESPONSE"
    default_message = "No audio payload returned by the speech provider."


class UploadFailed(TtsPipelineError):
    error_code = "TTS_UPLOAD_FAILED"
    default_message = "Uploading synthesized audio failed."


class BatchCancelled(TtsPipelineError):
    error_code = "TTS_BATCH_CANCELLED"
    default_message = "Batch was cancelled before this item started."


def _normalize_summary_fragment(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def truncate_summary(value: str, limit: int = MAX_PUBLIC_SUMMARY_CHARS) -> str:
    clean = _normalize_summary_fragment(value)
    if len(clean) <= limit:
        return clean
    if limit <= 3:
        return clean[:limit]
    return f"{clean[: max(0, limit - 3)].rstrip()}..."


def summarize_failures(fragments: list[str], default_summary: str) -> str:
    unique_fragments: list[str] = []
    seen: set[str] = set()
    for raw in fragments:
        normalized = _normalize_summary_fragment(raw)
        if not normalized or normalized.lower() in seen:
            continue
        seen.add(normalized.lower())
        unique_fragments.append(normalized)
    if not unique_fragments:
        return truncate_summary(default_summary)
    visible = unique_fragments[:MAX_PUBLIC_SUMMARY_ITEMS]
    summary = " | ".join(visible)
    omitted = len(unique_fragments) - len(visible)
    if omitted > 0:
        summary = f"{summary} (+{omitted} more)"
    return truncate_summary(summary)
