"""
WAV container helpers for the module overview audio.

OpenAI text-to-speech with ``response_format="pcm"`` returns raw 24 kHz,
16-bit little-endian mono samples. Players need a container around them, so
the overview is wrapped in a standard 44-byte RIFF/WAVE header before
playback.
"""

import base64
import struct
from dataclasses import dataclass

DEFAULT_SAMPLE_RATE = 24000
DEFAULT_CHANNELS = 1
BITS_PER_SAMPLE = 16
WAV_HEADER_SIZE = 44
PCM_FORMAT_TAG = 1

# RIFF id, RIFF size, WAVE, "fmt ", fmt size, format tag, channels,
# sample rate, byte rate, block align, bits per sample, "data", data size
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavHeader:
    riff_size: int
    format_tag: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int


def pcm_to_wav(
    pcm_base64: str,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    num_channels: int = DEFAULT_CHANNELS,
) -> bytes:
    """
    Wrap Base64-encoded 16-bit PCM samples in a WAV container.

    The result is always ``44 + len(pcm)`` bytes long.
    """
    pcm = base64.b64decode(pcm_base64)
    block_align = num_channels * BITS_PER_SAMPLE // 8
    header = _HEADER.pack(
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_TAG,
        num_channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        len(pcm),
    )
    return header + pcm


def read_wav_header(data: bytes) -> WavHeader:
    """Parse the fixed 44-byte header written by ``pcm_to_wav``."""
    if len(data) < WAV_HEADER_SIZE:
        raise ValueError(f"WAV data too short: {len(data)} bytes")
    (riff, riff_size, wave, fmt, fmt_size, format_tag, channels, sample_rate,
     byte_rate, block_align, bits, data_id, data_size) = _HEADER.unpack_from(data)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_id != b"data" or fmt_size != 16:
        raise ValueError("Not a canonical PCM WAV header")
    return WavHeader(
        riff_size=riff_size,
        format_tag=format_tag,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits,
        data_size=data_size,
    )
