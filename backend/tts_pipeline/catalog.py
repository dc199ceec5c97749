from __future__ import annotations

import json
import os
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

VALID_GENDERS = {"male", "female"}
TEXT_PLACEHOLDER = "{text}"


@dataclass(frozen=True)
class ModelCapability:
    model_id: str
    supports_multi_speaker: bool
    sample_rate: int


@dataclass(frozen=True)
class VoiceProfile:
    name: str
    gender: str
    accents: frozenset[str]


@dataclass(frozen=True)
class TtsCatalog:
    version: str
    default_voice: str
    models: tuple[ModelCapability, ...]
    voices: dict[str, VoiceProfile]
    single_speaker_prompt: str
    multi_speaker_prompt: str

    def model_for(self, multi_speaker: bool) -> ModelCapability:
        for model in self.models:
            if not multi_speaker or model.supports_multi_speaker:
                return model
        raise ValueError("No configured TTS model supports multi-speaker synthesis.")

    def resolve_voice(self, voice: Optional[str]) -> str:
        token = str(voice or "").strip()
        return token or self.default_voice

    def render_prompt(self, text: str, multi_speaker: bool) -> str:
        template = self.multi_speaker_prompt if multi_speaker else self.single_speaker_prompt
        return template.replace(TEXT_PLACEHOLDER, text)

    def pick_secondary_voice(self, primary: str, accent: Optional[str] = None, rng: Optional[random.Random] = None) -> str:
        """Second dialogue voice: same accent, different voice, opposite gender when possible."""
        chooser = rng or random
        token = str(accent or "").strip().upper()
        candidates = [
            profile
            for profile in self.voices.values()
            if profile.name != primary and (not token or token in profile.accents)
        ]
        if not candidates:
            candidates = [profile for profile in self.voices.values() if profile.name != primary]
        if not candidates:
            return primary
        primary_profile = self.voices.get(primary)
        if primary_profile is not None:
            contrasting = [profile for profile in candidates if profile.gender != primary_profile.gender]
            if contrasting:
                candidates = contrasting
        return chooser.choice(sorted(candidates, key=lambda profile: profile.name)).name


def _default_catalog_path() -> Path:
    env_path = str(os.getenv("TTS_CATALOG_PATH") or "").strip()
    if env_path:
        return Path(env_path)
    return Path(__file__).resolve().parents[1] / "config" / "tts_catalog.json"


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


def _normalize_model_id(raw: Any) -> str:
    token = str(raw or "").strip()
    if token.lower().startswith("models/"):
        token = token[7:]
    return token.strip()


def _parse_models(payload: Any) -> tuple[ModelCapability, ...]:
    _require(isinstance(payload, list) and len(payload) > 0, "Catalog models must be a non-empty list.")
    models: list[ModelCapability] = []
    seen: set[str] = set()
    for index, item in enumerate(payload):
        _require(isinstance(item, dict), f"models[{index}] must be an object.")
        model_id = _normalize_model_id(item.get("id"))
        _require(bool(model_id), f"models[{index}].id is required.")
        _require(model_id not in seen, f"Duplicate model id in catalog: {model_id}")
        sample_rate = item.get("sampleRate", 24000)
        _require(isinstance(sample_rate, int) and sample_rate > 0, f"models[{index}].sampleRate must be a positive integer.")
        seen.add(model_id)
        models.append(
            ModelCapability(
                model_id=model_id,
                supports_multi_speaker=bool(item.get("supportsMultiSpeaker", False)),
                sample_rate=int(sample_rate),
            )
        )
    return tuple(models)


def _parse_voices(payload: Any) -> dict[str, VoiceProfile]:
    _require(isinstance(payload, list) and len(payload) > 0, "Catalog voices must be a non-empty list.")
    voices: dict[str, VoiceProfile] = {}
    for index, item in enumerate(payload):
        _require(isinstance(item, dict), f"voices[{index}] must be an object.")
        name = str(item.get("name") or "").strip()
        _require(bool(name), f"voices[{index}].name is required.")
        _require(name not in voices, f"Duplicate voice in catalog: {name}")
        gender = str(item.get("gender") or "").strip().lower()
        _require(gender in VALID_GENDERS, f"voices[{index}].gender has invalid value: {gender}")
        accents_payload = item.get("accents") or []
        _require(isinstance(accents_payload, list), f"voices[{index}].accents must be a list.")
        voices[name] = VoiceProfile(
            name=name,
            gender=gender,
            accents=frozenset(str(accent or "").strip().upper() for accent in accents_payload if str(accent or "").strip()),
        )
    return voices


def load_tts_catalog(catalog_path: Optional[str] = None) -> TtsCatalog:
    target = Path(catalog_path).expanduser().resolve() if catalog_path else _default_catalog_path().resolve()
    if not target.exists():
        raise ValueError(f"TTS catalog file not found: {target}")
    try:
        payload = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to parse TTS catalog JSON: {exc}") from exc
    _require(isinstance(payload, dict), "TTS catalog root must be an object.")

    version = str(payload.get("version") or "").strip()
    _require(bool(version), "TTS catalog must include a non-empty version.")

    models = _parse_models(payload.get("models"))
    voices = _parse_voices(payload.get("voices"))
    default_voice = str(payload.get("defaultVoice") or "").strip()
    _require(default_voice in voices, f"defaultVoice is not a configured voice: {default_voice}")

    prompts = payload.get("prompts") or {}
    _require(isinstance(prompts, dict), "TTS catalog prompts must be an object.")
    single_prompt = str(prompts.get("singleSpeaker") or TEXT_PLACEHOLDER)
    multi_prompt = str(prompts.get("multiSpeaker") or TEXT_PLACEHOLDER)
    for label, template in (("singleSpeaker", single_prompt), ("multiSpeaker", multi_prompt)):
        _require(TEXT_PLACEHOLDER in template, f"prompts.{label} must contain {TEXT_PLACEHOLDER}.")

    return TtsCatalog(
        version=version,
        default_voice=default_voice,
        models=models,
        voices=voices,
        single_speaker_prompt=single_prompt,
        multi_speaker_prompt=multi_prompt,
    )
