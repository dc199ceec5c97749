"""PCM → container encoders for synthesized speech.

Input is always mono 16-bit little-endian linear PCM as returned by the TTS
provider. Everything here is pure and synchronous; a trailing odd byte is
dropped and an empty buffer produces a valid, empty container.
"""
from __future__ import annotations

import io
import struct
import wave
from dataclasses import dataclass
from typing import Optional

import lameenc
import numpy as np

PCM_SAMPLE_WIDTH = 2
WAV_HEADER_SIZE = 44
WAVE_FORMAT_PCM = 1
WAVE_FORMAT_MULAW = 7

MULAW_BIAS = 0x84
MULAW_CLIP = 32635

MP3_SAMPLE_RATE = 22050
MP3_BITRATE_KBPS = 32
MP3_BLOCK_SAMPLES = 1152
MP3_QUALITY = 5

AUDIO_FORMATS: dict[str, tuple[str, str]] = {
    "wav": ("wav", "audio/wav"),
    "mulaw": ("wav", "audio/wav"),
    "mp3": ("mp3", "audio/mpeg"),
}


@dataclass(frozen=True)
class WavHeader:
    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_offset: int
    data_size: int


@dataclass(frozen=True)
class EncodedAudio:
    data: bytes
    audio_format: str
    extension: str
    content_type: str
    sample_rate: int

    @property
    def storage_extension(self) -> str:
        """Object-key suffix; PCM and mu-law WAV share an extension, so mu-law names its rate."""
        if self.audio_format == "mulaw":
            return f"mulaw{self.sample_rate}.{self.extension}"
        return self.extension


def pcm_to_samples(pcm: bytes) -> np.ndarray:
    usable = len(pcm) - (len(pcm) % PCM_SAMPLE_WIDTH)
    return np.frombuffer(bytes(pcm[:usable]), dtype="<i2").astype(np.int16)


def resample_linear(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    if int(from_rate) <= 0 or int(to_rate) <= 0:
        raise ValueError("Sample rates must be > 0.")
    if int(from_rate) == int(to_rate) or samples.size == 0:
        return samples

    count = int(samples.size)
    out_len = -(-count * int(to_rate) // int(from_rate))
    ratio = float(from_rate) / float(to_rate)
    positions = np.arange(out_len, dtype=np.float64) * ratio
    lower = np.minimum(np.floor(positions).astype(np.int64), count - 1)
    upper = np.minimum(lower + 1, count - 1)
    frac = positions - lower
    source = samples.astype(np.float64)
    mixed = source[lower] * (1.0 - frac) + source[upper] * frac
    # Half-up rounding.
    return np.clip(np.floor(mixed + 0.5), -32768, 32767).astype(np.int16)


def linear_to_mulaw(sample: int) -> int:
    sign = 0x80 if sample < 0 else 0
    magnitude = min(abs(int(sample)), MULAW_CLIP) + MULAW_BIAS
    exponent = 7
    mask = 0x4000
    while not magnitude & mask and exponent > 0:
        exponent -= 1
        mask >>= 1
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def _build_mulaw_table() -> np.ndarray:
    samples = np.arange(-32768, 32768, dtype=np.int32)
    sign = np.where(samples < 0, 0x80, 0).astype(np.int32)
    magnitude = np.minimum(np.abs(samples), MULAW_CLIP) + MULAW_BIAS
    exponent = np.zeros_like(magnitude)
    for shift in range(8, 15):
        exponent += (magnitude >= (1 << shift)).astype(np.int32)
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return (~(sign | (exponent << 4) | mantissa) & 0xFF).astype(np.uint8)


MULAW_TABLE = _build_mulaw_table()


def samples_to_mulaw(samples: np.ndarray) -> np.ndarray:
    return MULAW_TABLE[samples.astype(np.int32) + 32768]


def _wav_header(audio_format: int, sample_rate: int, bits_per_sample: int, data_size: int) -> bytes:
    block_align = bits_per_sample // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        audio_format,
        1,
        int(sample_rate),
        int(sample_rate) * block_align,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )


def encode_wav(pcm: bytes, sample_rate: int) -> bytes:
    usable = len(pcm) - (len(pcm) % PCM_SAMPLE_WIDTH)
    out = io.BytesIO()
    with wave.open(out, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(PCM_SAMPLE_WIDTH)
        wav.setframerate(int(sample_rate))
        wav.writeframes(bytes(pcm[:usable]))
    return out.getvalue()


def encode_mulaw_wav(pcm: bytes, sample_rate: int, target_sample_rate: Optional[int] = None) -> bytes:
    output_rate = int(target_sample_rate) if target_sample_rate and int(target_sample_rate) > 0 else int(sample_rate)
    samples = resample_linear(pcm_to_samples(pcm), int(sample_rate), output_rate)
    payload = samples_to_mulaw(samples).tobytes()
    return _wav_header(WAVE_FORMAT_MULAW, output_rate, 8, len(payload)) + payload


def encode_mp3(pcm: bytes, sample_rate: int) -> bytes:
    samples = resample_linear(pcm_to_samples(pcm), int(sample_rate), MP3_SAMPLE_RATE)
    if samples.size == 0:
        return b""

    encoder = lameenc.Encoder()
    encoder.set_bit_rate(MP3_BITRATE_KBPS)
    encoder.set_in_sample_rate(MP3_SAMPLE_RATE)
    encoder.set_channels(1)
    encoder.set_quality(MP3_QUALITY)

    chunks: list[bytes] = []
    for offset in range(0, int(samples.size), MP3_BLOCK_SAMPLES):
        block = samples[offset : offset + MP3_BLOCK_SAMPLES]
        encoded = encoder.encode(block.astype("<i2").tobytes())
        if encoded:
            chunks.append(bytes(encoded))
    tail = encoder.flush()
    if tail:
        chunks.append(bytes(tail))
    return b"".join(chunks)


def decode_wav_header(data: bytes) -> WavHeader:
    if len(data) < 12 or data[:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise ValueError("Invalid WAV file: missing RIFF/WAVE header.")

    fmt: Optional[tuple[int, int, int, int, int, int]] = None
    offset = 12
    while offset + 8 <= len(data):
        chunk_id, chunk_size = struct.unpack_from("<4sI", data, offset)
        body = offset + 8
        if chunk_id == b"fmt ":
            if chunk_size < 16 or body + 16 > len(data):
                raise ValueError("Invalid WAV file: truncated fmt chunk.")
            fmt = struct.unpack_from("<HHIIHH", data, body)
        elif chunk_id == b"data":
            if fmt is None:
                raise ValueError("Invalid WAV file: data chunk before fmt chunk.")
            audio_format, channels, sample_rate, byte_rate, block_align, bits = fmt
            return WavHeader(
                audio_format=audio_format,
                channels=channels,
                sample_rate=sample_rate,
                byte_rate=byte_rate,
                block_align=block_align,
                bits_per_sample=bits,
                data_offset=body,
                data_size=min(int(chunk_size), len(data) - body),
            )
        offset = body + chunk_size + (chunk_size & 1)
    raise ValueError("Invalid WAV file: missing data chunk.")


def wav_payload(data: bytes) -> bytes:
    header = decode_wav_header(data)
    return bytes(data[header.data_offset : header.data_offset + header.data_size])


def wav_to_mp3(wav_bytes: bytes) -> bytes:
    header = decode_wav_header(wav_bytes)
    if header.audio_format != WAVE_FORMAT_PCM or header.bits_per_sample != 16 or header.channels != 1:
        raise ValueError("Only mono 16-bit PCM WAV input can be converted to MP3.")
    return encode_mp3(wav_payload(wav_bytes), header.sample_rate)


def encode_clip(
    pcm: bytes,
    sample_rate: int,
    audio_format: str = "wav",
    *,
    mulaw_sample_rate: Optional[int] = None,
) -> EncodedAudio:
    normalized = str(audio_format or "wav").strip().lower()
    if normalized not in AUDIO_FORMATS:
        raise ValueError(f"Unsupported audio format: {audio_format}")
    extension, content_type = AUDIO_FORMATS[normalized]
    if normalized == "mp3":
        data = encode_mp3(pcm, sample_rate)
        output_rate = MP3_SAMPLE_RATE
    elif normalized == "mulaw":
        data = encode_mulaw_wav(pcm, sample_rate, mulaw_sample_rate)
        output_rate = int(mulaw_sample_rate) if mulaw_sample_rate and int(mulaw_sample_rate) > 0 else int(sample_rate)
    else:
        data = encode_wav(pcm, sample_rate)
        output_rate = int(sample_rate)
    return EncodedAudio(
        data=data,
        audio_format=normalized,
        extension=extension,
        content_type=content_type,
        sample_rate=output_rate,
    )
