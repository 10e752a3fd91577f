"""Parse free-form script text into lines, scenes and characters."""

import re

from scene_partner.models import Character, Line, Scene, Script
from scene_partner.constants import (
    DIALOGUE,
    STAGE_DIRECTION,
    SCENE_HEADING,
    SCENE_HEADING_PREFIXES,
    CHARACTER_NAME_MAX_WORDS,
    SYNTHETIC_SCENE_HEADING,
    UNTITLED_SCRIPT,
)

# "SCENE 3" even without a trailing space-separated prefix match
_SCENE_NUMBER_RE = re.compile(r"^SCENE\s+\d+", re.IGNORECASE)

# ALEX / MARY-JANE / O'BRIEN, optionally followed by an extension: ALEX (V.O.)
_CHARACTER_RE = re.compile(r"^([A-Z][A-Z' \-]*[A-Z'])\s*(?:\((?:[A-Z.' ]+)\))?$")

# Inline attribution: ALEX: I told you already.
_INLINE_RE = re.compile(r"^([A-Z][A-Z' \-]*[A-Z'])\s*(?:\([A-Za-z.' ]+\))?\s*:\s*(.+)$")

_TITLE_RE = re.compile(r"^title\s*:\s*(.+)$", re.IGNORECASE)


def extract_title(text: str) -> str:
    """Return the value of a ``Title:`` header line, or "" if none."""
    for line in text.strip().split("\n"):
        match = _TITLE_RE.match(line.strip())
        if match:
            return match.group(1).strip()
    return ""


def is_scene_heading(text: str) -> bool:
    upper = text.upper()
    if upper.startswith(SCENE_HEADING_PREFIXES):
        return True
    return bool(_SCENE_NUMBER_RE.match(upper))


def is_stage_direction(text: str) -> bool:
    return text.startswith("(") or text.startswith("[")


def _character_name(text: str) -> str | None:
    """Return the normalized name if the line is a bare character cue."""
    match = _CHARACTER_RE.match(text.strip())
    if not match:
        return None
    name = match.group(1).strip()
    if len(name) < 2 or len(name.split()) > CHARACTER_NAME_MAX_WORDS:
        return None
    return _normalize_name(name)


def _inline_dialogue(text: str) -> tuple[str, str] | None:
    match = _INLINE_RE.match(text)
    if not match:
        return None
    name = match.group(1).strip()
    if len(name) < 2 or len(name.split()) > CHARACTER_NAME_MAX_WORDS:
        return None
    return _normalize_name(name), match.group(2).strip()


def _normalize_name(name: str) -> str:
    return " ".join(name.split()).upper()


def parse_script(raw_text: str, title: str = "") -> Script:
    """Parse raw script text into a Script.

    Blank lines end the pending speaker. Headings open a new scene, lines in
    parentheses or brackets are stage directions, an all-caps cue sets the
    speaker for the following dialogue, and ``NAME: text`` is dialogue on a
    single line. Prose with no speaker becomes a stage direction. A script
    with no headings gets one synthetic scene owning every line. A leading
    ``Title:`` header is skipped; see extract_title().
    """
    lines: list[Line] = []
    scene_headings: list[str] = []
    scene_members: list[list[int]] = []
    counts: dict[str, int] = {}

    speaker = None
    scene_index = None

    def add(text: str, kind: str, who: str | None = None) -> None:
        index = len(lines)
        lines.append(Line(index=index, text=text, kind=kind, speaker=who, scene_index=scene_index))
        if scene_index is not None:
            scene_members[scene_index].append(index)

    for raw in raw_text.splitlines():
        text = raw.strip()
        if not text:
            speaker = None
            continue

        # A "Title:" header is metadata, not a line
        if not lines and _TITLE_RE.match(text):
            continue

        if is_scene_heading(text):
            speaker = None
            scene_headings.append(text)
            scene_members.append([])
            scene_index = len(scene_headings) - 1
            add(text, SCENE_HEADING)
            continue

        # Stage directions are beats inside a speech, the speaker stays pending
        if is_stage_direction(text):
            add(text, STAGE_DIRECTION)
            continue

        name = _character_name(text)
        if name:
            speaker = name
            continue

        inline = _inline_dialogue(text)
        if inline:
            speaker, text = inline

        if speaker:
            add(text, DIALOGUE, speaker)
            counts[speaker] = counts.get(speaker, 0) + 1
        else:
            add(text, STAGE_DIRECTION)

    if scene_headings:
        scenes = tuple(
            Scene(index=i, heading=heading, line_indices=tuple(scene_members[i]))
            for i, heading in enumerate(scene_headings)
        )
    elif lines:
        lines = [
            Line(index=l.index, text=l.text, kind=l.kind, speaker=l.speaker, scene_index=0)
            for l in lines
        ]
        scenes = (Scene(index=0, heading=SYNTHETIC_SCENE_HEADING,
                        line_indices=tuple(range(len(lines)))),)
    else:
        scenes = ()

    characters = tuple(
        Character(name=name, line_count=count)
        for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    )

    return Script(
        title=title.strip() or UNTITLED_SCRIPT,
        raw_text=raw_text,
        lines=tuple(lines),
        scenes=scenes,
        characters=characters,
    )
