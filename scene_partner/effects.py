"""Delivery shaping for synthesized partner lines: level, room and pause."""

import math

import numpy as np
import pedalboard
from pydub import AudioSegment

from scene_partner.constants import ROOM_REVERB_SIZE, ROOM_REVERB_WET_LEVEL, TARGET_DBFS
from scene_partner.models import VoiceProfile


def to_float_samples(audio: AudioSegment) -> np.ndarray:
    """Return samples as float32 in [-1, 1], shaped (frames, channels)."""
    samples = np.array(audio.get_array_of_samples(), dtype=np.float32)
    full_scale = float(1 << (8 * audio.sample_width - 1))
    samples = samples / full_scale
    return samples.reshape((-1, audio.channels))


def from_float_samples(samples: np.ndarray, frame_rate: int) -> AudioSegment:
    """Inverse of to_float_samples, always 16-bit output."""
    channels = samples.shape[1] if samples.ndim > 1 else 1
    pcm = np.clip(samples * 32768.0, -32768, 32767).astype(np.int16)
    return AudioSegment(
        data=pcm.flatten().tobytes(),
        sample_width=2,
        frame_rate=frame_rate,
        channels=channels,
    )


def apply_reverb(
    audio: AudioSegment,
    room_size: float = ROOM_REVERB_SIZE,
    wet_level: float = ROOM_REVERB_WET_LEVEL,
) -> AudioSegment:
    """Put the partner voice in a small room so it sits apart from the user."""
    samples = np.ascontiguousarray(to_float_samples(audio).T)   # pedalboard wants (channels, frames)
    board = pedalboard.Pedalboard([
        pedalboard.Reverb(room_size=room_size, wet_level=wet_level),
    ])
    processed = board(samples, audio.frame_rate)
    return from_float_samples(processed.T, audio.frame_rate)


def normalize_level(audio: AudioSegment, target_dbfs: float = TARGET_DBFS) -> AudioSegment:
    """Bring a clip to target_dbfs. Silent clips are left unchanged."""
    if audio.dBFS == float("-inf"):
        return audio
    return audio + (target_dbfs - audio.dBFS)


def apply_volume(audio: AudioSegment, volume: float) -> AudioSegment:
    """Scale by a linear 0.0–1.0 volume."""
    if volume >= 1.0:
        return audio
    if volume <= 0.0:
        return AudioSegment.silent(duration=len(audio), frame_rate=audio.frame_rate)
    return audio + 20 * math.log10(volume)


def shape_delivery(
    audio: AudioSegment,
    profile: VoiceProfile,
    normalize: bool = True,
    room: bool = False,
) -> AudioSegment:
    """Level, volume, optional room reverb, then the post-line pause.

    Rate and pitch are applied by the synthesizer; volume is applied here
    after normalization so quiet tones stay quieter than loud ones.
    """
    if normalize:
        audio = normalize_level(audio)
    audio = apply_volume(audio, profile.volume)
    if room:
        audio = apply_reverb(audio)
    if profile.post_pause_ms > 0:
        audio = audio + AudioSegment.silent(duration=profile.post_pause_ms, frame_rate=audio.frame_rate)
    return audio
