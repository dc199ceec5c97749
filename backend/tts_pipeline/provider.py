"""Gemini text-to-speech calls, reduced to one typed result per attempt."""
from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tts_pipeline.catalog import TtsCatalog
from tts_pipeline.errors import MalformedProviderResponse

DEFAULT_SAMPLE_RATE = 24000
SPEAKER_LABELS = ("Speaker1", "Speaker2")
_RATE_PARAM = re.compile(r"rate=(\d+)", re.IGNORECASE)
_STATUS_IN_MESSAGE = re.compile(r"\b([45]\d\d)\b")
RETRYABLE_CLIENT_STATUSES = (408, 429)


@dataclass(frozen=True)
class AttemptSuccess:
    pcm: bytes
    sample_rate: int
    model_id: str = ""


@dataclass(frozen=True)
class AttemptRetryable:
    status: Optional[int]
    reason: str


@dataclass(frozen=True)
class AttemptFatal:
    status: Optional[int]
    reason: str
    key_specific: bool


AttemptResult = Union[AttemptSuccess, AttemptRetryable, AttemptFatal]


class ProviderAudio(BaseModel):
    model_config = ConfigDict(frozen=True)

    pcm: bytes = Field(min_length=1)
    mime_type: str = ""
    sample_rate: int = Field(default=DEFAULT_SAMPLE_RATE, gt=0)


def is_rate_limit_status(status: Optional[int]) -> bool:
    return status == 429


def is_auth_status(status: Optional[int]) -> bool:
    return status in (401, 403)


def classify_status(status: Optional[int], reason: str) -> AttemptResult:
    if status is None or status in RETRYABLE_CLIENT_STATUSES or status >= 500:
        return AttemptRetryable(status=status, reason=reason)
    if is_auth_status(status):
        return AttemptFatal(status=status, reason=reason, key_specific=True)
    if 400 <= status < 500:
        return AttemptFatal(status=status, reason=reason, key_specific=False)
    return AttemptRetryable(status=status, reason=reason)


def _status_from_message(message: str) -> Optional[int]:
    lower = str(message or "").lower()
    if "resource_exhausted" in lower or "quota exceeded" in lower or "rate limit" in lower:
        return 429
    if "api_key_invalid" in lower or "api key not valid" in lower or "permission_denied" in lower:
        return 403
    match = _STATUS_IN_MESSAGE.search(lower)
    if match:
        return int(match.group(1))
    return None


def parse_sample_rate(mime_type: str) -> int:
    match = _RATE_PARAM.search(str(mime_type or ""))
    if not match:
        return DEFAULT_SAMPLE_RATE
    rate = int(match.group(1))
    return rate if rate > 0 else DEFAULT_SAMPLE_RATE


def parse_audio_response(response: object) -> ProviderAudio:
    candidates = getattr(response, "candidates", None) or []
    for cand in candidates:
        content = getattr(cand, "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            inline_data = getattr(part, "inline_data", None)
            if inline_data is None:
                continue
            data = getattr(inline_data, "data", None)
            if data is None:
                continue
            if isinstance(data, str):
                try:
                    data = base64.b64decode(data, validate=True)
                except (binascii.Error, ValueError) as exc:
                    raise MalformedProviderResponse("Audio payload is not valid base64.") from exc
            if not isinstance(data, (bytes, bytearray)):
                raise MalformedProviderResponse("Audio payload has an unexpected type.")
            mime_type = str(getattr(inline_data, "mime_type", None) or "")
            try:
                return ProviderAudio(pcm=bytes(data), mime_type=mime_type, sample_rate=parse_sample_rate(mime_type))
            except ValidationError as exc:
                raise MalformedProviderResponse(f"Audio payload failed validation: {exc.errors()[0]['msg']}") from exc
    raise MalformedProviderResponse()


def build_genai_client(api_key: str, timeout_ms: int) -> genai.Client:
    return genai.Client(api_key=api_key, http_options=types.HttpOptions(timeout=max(1000, int(timeout_ms))))


def build_single_speech_config(voice_name: str) -> types.SpeechConfig:
    return types.SpeechConfig(
        voice_config=types.VoiceConfig(
            prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice_name)
        ),
    )


def build_multi_speaker_speech_config(primary_voice: str, secondary_voice: str) -> types.SpeechConfig:
    return types.SpeechConfig(
        multi_speaker_voice_config=types.MultiSpeakerVoiceConfig(
            speaker_voice_configs=[
                types.SpeakerVoiceConfig(
                    speaker=speaker,
                    voice_config=types.VoiceConfig(
                        prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice_name)
                    ),
                )
                for speaker, voice_name in zip(SPEAKER_LABELS, (primary_voice, secondary_voice))
            ]
        ),
    )


class GeminiTtsProvider:
    def __init__(
        self,
        catalog: TtsCatalog,
        *,
        client_factory: Optional[Callable[[str, int], Any]] = None,
    ) -> None:
        self.catalog = catalog
        self._client_factory = client_factory or build_genai_client

    def synthesize(
        self,
        api_key: str,
        text: str,
        voice: str,
        timeout_ms: int,
        *,
        secondary_voice: Optional[str] = None,
    ) -> AttemptResult:
        multi_speaker = bool(secondary_voice) and secondary_voice != voice
        model = self.catalog.model_for(multi_speaker)
        speech_config = (
            build_multi_speaker_speech_config(voice, str(secondary_voice))
            if multi_speaker
            else build_single_speech_config(voice)
        )
        try:
            client = self._client_factory(api_key, timeout_ms)
            response = client.models.generate_content(
                model=model.model_id,
                contents=self.catalog.render_prompt(text, multi_speaker),
                config=types.GenerateContentConfig(
                    response_modalities=["AUDIO"],
                    speech_config=speech_config,
                ),
            )
            audio = parse_audio_response(response)
        except MalformedProviderResponse as exc:
            return AttemptRetryable(status=None, reason=exc.message)
        except genai_errors.APIError as exc:
            status = int(exc.code) if exc.code else None
            return classify_status(status, _reason(exc))
        except httpx.TimeoutException as exc:
            return AttemptRetryable(status=None, reason=f"timeout: {_reason(exc)}")
        except httpx.TransportError as exc:
            return AttemptRetryable(status=None, reason=f"transport: {_reason(exc)}")
        except Exception as exc:  # noqa: BLE001
            detail = _reason(exc)
            return classify_status(_status_from_message(detail), detail)
        return AttemptSuccess(pcm=audio.pcm, sample_rate=audio.sample_rate, model_id=model.model_id)


def _reason(exc: BaseException) -> str:
    detail = str(exc).strip().replace("\n", " ")
    return (detail or type(exc).__name__)[:200]
