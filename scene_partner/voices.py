"""Partner voice casting and direction sidecar loading."""

import hashlib
import json
import logging
import os

from scene_partner.models import Script, ToneAnalysis, tone_analysis_from_dict
from scene_partner.constants import (
    NARRATOR_NAME,
    NARRATOR_VOICE,
    CAST_SIDECAR_SUFFIX,
    TONE_SIDECAR_SUFFIX,
)

logger = logging.getLogger(__name__)

# Hardcoded English voice pool (avoids network call at startup)
VOICE_POOL = [
    "en-US-AriaNeural",
    "en-US-DavisNeural",
    "en-US-TonyNeural",
    "en-US-JennyNeural",
    "en-US-SaraNeural",
    "en-GB-SoniaNeural",
    "en-GB-ThomasNeural",
    "en-AU-NatashaNeural",
    "en-AU-WilliamNeural",
    "en-CA-ClaraNeural",
    "en-CA-LiamNeural",
    "en-IN-NeerjaNeural",
    "en-IN-PrabhatNeural",
    "en-IE-EmilyNeural",
]


def _load_sidecar(script_path: str, suffix: str) -> dict:
    base = os.path.splitext(script_path)[0]
    path = base + suffix
    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed sidecar file: %s — ignoring it", path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Sidecar file is not a JSON object: %s — ignoring it", path)
        return {}
    return data


def load_cast(script_path: str) -> dict:
    """Load the .cast.json sidecar ({"NAME": "voice-id"}) if it exists.

    Returns an upper-cased name → voice mapping, or {} if missing or malformed.
    """
    data = _load_sidecar(script_path, CAST_SIDECAR_SUFFIX)
    return {name.upper(): voice for name, voice in data.items() if isinstance(voice, str)}


def load_tone_analysis(script_path: str) -> ToneAnalysis | None:
    """Load the .tone.json direction sidecar. None when there is none."""
    data = _load_sidecar(script_path, TONE_SIDECAR_SUFFIX)
    if not data:
        return None
    return tone_analysis_from_dict(data)


def _hash_voice(name: str, pool: list[str]) -> str:
    """Deterministic voice assignment via sha256 hash."""
    h = hashlib.sha256(name.encode()).hexdigest()
    idx = int(h, 16) % len(pool)
    return pool[idx]


def cast_voices(
    script: Script,
    user_characters=(),
    cast: dict | None = None,
    narrator_voice: str = NARRATOR_VOICE,
) -> dict[str, str]:
    """Pick a voice for every partner character.

    Priority: cast file → deterministic hash over the voices the cast file
    has not already taken. The narrator (unattributed lines) always gets
    narrator_voice. User characters are never cast.
    """
    cast = {k.upper(): v for k, v in (cast or {}).items()}
    users = {name.upper() for name in user_characters}

    used = set(cast.values()) | {narrator_voice}
    available_pool = [v for v in VOICE_POOL if v not in used]
    if not available_pool:
        available_pool = list(VOICE_POOL)  # fallback to full pool if all taken

    voices = {NARRATOR_NAME: narrator_voice}
    for character in script.characters:
        if character.name in users:
            continue
        voices[character.name] = cast.get(character.name) or _hash_voice(character.name, available_pool)
    return voices


def build_overrides(
    voices: dict[str, str],
    analysis: ToneAnalysis | None = None,
) -> dict[str, dict]:
    """Combine cast voices with per-character profiles from a direction file.

    A voice_id in the direction file wins over the cast voice.
    """
    overrides = {name: {"voice_id": voice} for name, voice in voices.items()}
    if analysis:
        for name, partial in analysis.tts_profiles.items():
            entry = overrides.setdefault(name, {})
            for key, value in partial.items():
                if value:
                    entry[key] = value
    return overrides
