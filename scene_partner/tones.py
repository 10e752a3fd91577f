"""Map tone labels to voice delivery parameters.

Works fully offline from the built-in presets. Externally supplied
profiles (per character) are layered on top with sparse-override
semantics: only fields that are actually set replace the computed value.
"""

from scene_partner.models import DEFAULT_PROFILE, ToneAnalysis, VoiceProfile

# tone → (rate, pitch, volume, post-pause ms)
TONE_ADJUSTMENTS = {
    "tense": VoiceProfile(rate=0.55, pitch=1.1, volume=1.0, post_pause_ms=200),
    "playful": VoiceProfile(rate=0.58, pitch=1.2, volume=0.9, post_pause_ms=250),
    "intimate": VoiceProfile(rate=0.42, pitch=0.95, volume=0.75, post_pause_ms=500),
    "angry": VoiceProfile(rate=0.60, pitch=1.15, volume=1.0, post_pause_ms=150),
    "sad": VoiceProfile(rate=0.38, pitch=0.85, volume=0.7, post_pause_ms=600),
    "comedic": VoiceProfile(rate=0.62, pitch=1.25, volume=0.95, post_pause_ms=200),
    "mysterious": VoiceProfile(rate=0.40, pitch=0.90, volume=0.65, post_pause_ms=700),
    "urgent": VoiceProfile(rate=0.65, pitch=1.1, volume=1.0, post_pause_ms=100),
    "desperate": VoiceProfile(rate=0.60, pitch=1.1, volume=0.9, post_pause_ms=200),
    "hopeful": VoiceProfile(rate=0.52, pitch=1.1, volume=0.85, post_pause_ms=350),
    "bitter": VoiceProfile(rate=0.46, pitch=0.9, volume=0.85, post_pause_ms=400),
    "loving": VoiceProfile(rate=0.44, pitch=1.0, volume=0.8, post_pause_ms=450),
    "fearful": VoiceProfile(rate=0.58, pitch=1.2, volume=0.7, post_pause_ms=300),
    "defiant": VoiceProfile(rate=0.56, pitch=1.05, volume=1.0, post_pause_ms=200),
    "vulnerable": VoiceProfile(rate=0.40, pitch=0.95, volume=0.7, post_pause_ms=550),
}

_PROFILE_FIELDS = ("voice_id", "rate", "pitch", "volume", "post_pause_ms")


def _average(profiles: list[VoiceProfile], base: VoiceProfile) -> VoiceProfile:
    n = len(profiles)
    return VoiceProfile(
        voice_id=base.voice_id,
        rate=sum(p.rate for p in profiles) / n,
        pitch=sum(p.pitch for p in profiles) / n,
        volume=sum(p.volume for p in profiles) / n,
        post_pause_ms=int(sum(p.post_pause_ms for p in profiles) / n),
    )


def _as_partial(override) -> dict:
    if isinstance(override, VoiceProfile):
        return {name: getattr(override, name) for name in _PROFILE_FIELDS}
    return dict(override or {})


def merge(base: VoiceProfile, override) -> VoiceProfile:
    """Apply a partial profile (dict or VoiceProfile) onto base.

    Zero, None or empty override fields leave the base value alone.
    """
    partial = _as_partial(override)
    voice_id = partial.get("voice_id") or base.voice_id
    values = {}
    for name in ("rate", "pitch", "volume", "post_pause_ms"):
        value = partial.get(name)
        values[name] = value if value and value > 0 else getattr(base, name)
    return VoiceProfile(
        voice_id=voice_id,
        rate=float(values["rate"]),
        pitch=float(values["pitch"]),
        volume=float(values["volume"]),
        post_pause_ms=int(values["post_pause_ms"]),
    )


def profile_for(
    tones,
    overrides: dict | None = None,
    character: str | None = None,
) -> VoiceProfile:
    """Return the delivery profile for a set of tones.

    Priority: baseline → mean of matching tone presets → character override.
    Unknown tones are ignored rather than counted as zeros.
    """
    profile = DEFAULT_PROFILE
    labels = sorted({t.lower() for t in tones or ()})
    matches = [TONE_ADJUSTMENTS[t] for t in labels if t in TONE_ADJUSTMENTS]
    if matches:
        profile = _average(matches, profile)

    if overrides and character:
        override = overrides.get(character.upper())
        if override:
            profile = merge(profile, override)

    return profile


def tones_for(character: str, analysis: ToneAnalysis | None) -> list[str]:
    """Character's own direction tones, else the scene tones."""
    if analysis is None:
        return []
    own = analysis.character_tones.get(character.upper())
    if own:
        return list(own)
    return list(analysis.scene_tone)


def delivery_notes(analysis: ToneAnalysis | None) -> dict[int, str]:
    return dict(analysis.delivery_notes) if analysis else {}


def expressiveness(profile: VoiceProfile) -> dict:
    """Stability/similarity/style settings for neural backends that take them.

    edge-tts has no such knobs and only uses prosody(); this is the mapping
    for voice services with stability controls. Faster delivery reads as less
    stable and more expressive.
    """
    stability = 1.0 - (profile.rate - 0.3)
    return {
        "stability": round(max(0.3, min(0.9, stability)), 3),
        "similarity_boost": 0.75,
        "style": 0.35,
    }


def prosody(profile: VoiceProfile) -> dict:
    """edge-tts rate and pitch strings for a profile.

    rate 0.5 is the voice's natural pace; each 0.1 step is 20%.
    pitch is a multiplier mapped to a Hz offset. Volume is left to
    effects.shape_delivery so it survives level normalization.
    """
    p = profile.clamped()
    rate_pct = round((p.rate - 0.5) * 200)
    pitch_hz = round((p.pitch - 1.0) * 100)
    return {
        "rate": f"{rate_pct:+d}%",
        "pitch": f"{pitch_hz:+d}Hz",
    }
