"""Data models for scripts, rehearsal state and voice delivery."""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from scene_partner.constants import (
    DIALOGUE,
    IDLE,
    DEFAULT_RATE,
    DEFAULT_PITCH,
    DEFAULT_VOLUME,
    DEFAULT_POST_PAUSE_MS,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Line:
    index: int
    text: str
    kind: str                          # "dialogue", "stage_direction" or "scene_heading"
    speaker: str | None = None         # set iff kind == "dialogue"
    scene_index: int | None = None

    @property
    def is_dialogue(self) -> bool:
        return self.kind == DIALOGUE


@dataclass(frozen=True)
class Scene:
    index: int
    heading: str
    line_indices: tuple[int, ...] = ()


@dataclass(frozen=True)
class Character:
    name: str                          # upper-cased as it appears in the script
    line_count: int = 0


@dataclass(frozen=True)
class Script:
    """A parsed script. Read-only once built; re-parse to change it."""

    title: str
    raw_text: str
    lines: tuple[Line, ...] = ()
    scenes: tuple[Scene, ...] = ()
    characters: tuple[Character, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def lines_for(self, speaker: str) -> list[Line]:
        """All dialogue lines spoken by one character (case-insensitive)."""
        name = speaker.upper()
        return [
            line for line in self.lines
            if line.is_dialogue and line.speaker and line.speaker.upper() == name
        ]

    def dialogue_indices(self) -> set[int]:
        return {line.index for line in self.lines if line.is_dialogue}


@dataclass
class RehearsalState:
    """Mutable rehearsal state. Only RehearsalEngine writes to it."""

    status: str = IDLE
    current_line_index: int = 0
    user_characters: set[str] = field(default_factory=set)
    is_improv_mode_on: bool = False
    session_started_at: datetime | None = None
    completed_line_indices: set[int] = field(default_factory=set)

    def copy(self) -> "RehearsalState":
        return replace(
            self,
            user_characters=set(self.user_characters),
            completed_line_indices=set(self.completed_line_indices),
        )


@dataclass(frozen=True)
class VoiceProfile:
    voice_id: str | None = None        # edge-tts short name, e.g. "en-GB-SoniaNeural"
    rate: float = DEFAULT_RATE         # 0.0–1.0
    pitch: float = DEFAULT_PITCH       # 0.5–2.0
    volume: float = DEFAULT_VOLUME     # 0.0–1.0
    post_pause_ms: int = DEFAULT_POST_PAUSE_MS

    def clamped(self) -> "VoiceProfile":
        return VoiceProfile(
            voice_id=self.voice_id,
            rate=min(max(self.rate, 0.0), 1.0),
            pitch=min(max(self.pitch, 0.5), 2.0),
            volume=min(max(self.volume, 0.0), 1.0),
            post_pause_ms=max(int(self.post_pause_ms), 0),
        )


DEFAULT_PROFILE = VoiceProfile()


@dataclass
class ToneAnalysis:
    """Externally supplied direction for a script. Never rewrites dialogue."""

    scene_tone: list[str] = field(default_factory=list)
    character_intent: dict[str, str] = field(default_factory=dict)
    delivery_notes: dict[int, str] = field(default_factory=dict)
    tts_profiles: dict[str, dict] = field(default_factory=dict)
    character_tones: dict[str, list[str]] = field(default_factory=dict)


def _clean_profile(name: str, partial: dict) -> dict:
    """Keep only well-typed profile fields: numbers, and a string voice_id."""
    clean = {}
    for key, value in partial.items():
        if key == "voice_id":
            ok = isinstance(value, str) or value is None
        else:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            clean[key] = value
        else:
            logger.warning("Ignoring tts_profile field %s.%s: %r", name, key, value)
    return clean


def tone_analysis_from_dict(data: dict) -> ToneAnalysis:
    """Build a ToneAnalysis from its JSON form.

    Keys follow the sidecar format: scene_tone, character_intent,
    delivery_notes (line index → note), tts_profile (name → partial
    profile) and directions (name → {"tone": [...]}).
    """
    raw_profiles = data.get("tts_profile") or {}
    if not isinstance(raw_profiles, dict):
        logger.warning("Ignoring tts_profile: not an object")
        raw_profiles = {}
    profiles = {}
    for name, partial in raw_profiles.items():
        if not isinstance(partial, dict):
            logger.warning("Ignoring tts_profile for %s: not an object", name)
            continue
        profiles[name.upper()] = _clean_profile(name, partial)

    notes = {}
    for key, note in (data.get("delivery_notes") or {}).items():
        try:
            notes[int(key)] = note
        except (TypeError, ValueError):
            continue
    directions = data.get("directions") or {}
    return ToneAnalysis(
        scene_tone=list(data.get("scene_tone") or []),
        character_intent={k.upper(): v for k, v in (data.get("character_intent") or {}).items()},
        delivery_notes=notes,
        tts_profiles=profiles,
        character_tones={
            k.upper(): list(v.get("tone") or [])
            for k, v in directions.items()
            if isinstance(v, dict)
        },
    )


def script_to_dict(script: Script) -> dict:
    """JSON-ready form of a Script."""
    return {
        "id": script.id,
        "title": script.title,
        "raw_text": script.raw_text,
        "lines": [
            {
                "index": line.index,
                "speaker": line.speaker,
                "text": line.text,
                "kind": line.kind,
                "scene_index": line.scene_index,
            }
            for line in script.lines
        ],
        "scenes": [
            {"index": s.index, "heading": s.heading, "line_indices": list(s.line_indices)}
            for s in script.scenes
        ],
        "characters": [{"name": c.name, "line_count": c.line_count} for c in script.characters],
        "created_at": script.created_at.isoformat(),
        "updated_at": script.updated_at.isoformat(),
    }


def script_from_dict(data: dict) -> Script:
    return Script(
        id=data["id"],
        title=data["title"],
        raw_text=data.get("raw_text", ""),
        lines=tuple(
            Line(
                index=item["index"],
                text=item["text"],
                kind=item["kind"],
                speaker=item.get("speaker"),
                scene_index=item.get("scene_index"),
            )
            for item in data.get("lines", [])
        ),
        scenes=tuple(
            Scene(index=s["index"], heading=s["heading"], line_indices=tuple(s["line_indices"]))
            for s in data.get("scenes", [])
        ),
        characters=tuple(
            Character(name=c["name"], line_count=c["line_count"])
            for c in data.get("characters", [])
        ),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )
