"""Script library, session reports and settings as JSON files."""

import json
import logging
import os
import re

from scene_partner.constants import (
    SCRIPTS_DIR,
    SESSIONS_SUBDIR,
    SETTINGS_FILE,
    TONE_SIDECAR_SUFFIX,
    CAST_SIDECAR_SUFFIX,
)
from scene_partner.models import Script, script_from_dict, script_to_dict
from scene_partner.summary import SessionSummary, summary_to_dict

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "local_only": False,        # never use the network voice
    "listen_mode": False,       # advance user lines on microphone silence
    "voice": "",                # narrator/default partner voice, "" = built-in
    "room_reverb": False,
}


def slug_from_path(script_path: str) -> str:
    """Convert a script filename (or title) to a storage slug.

    "Act One, Scene 2.txt" → "act_one_scene_2"
    "/path/to/The Audition.txt" → "the_audition"
    """
    basename = os.path.splitext(os.path.basename(script_path))[0]
    # Replace non-alphanumeric with underscore, collapse multiples, strip edges
    slug = re.sub(r"[^a-zA-Z0-9]+", "_", basename).strip("_").lower()
    return slug


def write_artifact(directory: str, filename: str, data: dict) -> str:
    """Write JSON artifact to directory/filename. Returns the path."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    return path


def load_artifact(directory: str, filename: str) -> dict | None:
    """Read JSON artifact. Returns None if file doesn't exist."""
    path = os.path.join(directory, filename)
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return json.load(f)


def save_script(script: Script, slug: str, scripts_dir: str = SCRIPTS_DIR) -> str:
    return write_artifact(scripts_dir, f"{slug}.json", script_to_dict(script))


def load_script(slug: str, scripts_dir: str = SCRIPTS_DIR) -> Script | None:
    data = load_artifact(scripts_dir, f"{slug}.json")
    if data is None:
        return None
    return script_from_dict(data)


def list_scripts(scripts_dir: str = SCRIPTS_DIR) -> list[str]:
    """Slugs of all stored scripts, sorted."""
    if not os.path.isdir(scripts_dir):
        return []
    slugs = []
    for name in os.listdir(scripts_dir):
        slug, ext = os.path.splitext(name)
        # skip sidecars such as <slug>.tone.json
        if ext != ".json" or "." in slug:
            continue
        if os.path.isfile(os.path.join(scripts_dir, name)):
            slugs.append(slug)
    return sorted(slugs)


def remove_sidecars(slug: str, scripts_dir: str = SCRIPTS_DIR, keep=()) -> list[str]:
    """Delete <slug>.tone.json / <slug>.cast.json, except suffixes in keep."""
    removed = []
    for suffix in (TONE_SIDECAR_SUFFIX, CAST_SIDECAR_SUFFIX):
        path = os.path.join(scripts_dir, slug + suffix)
        if suffix not in keep and os.path.exists(path):
            os.remove(path)
            removed.append(path)
    return removed


def delete_script(slug: str, scripts_dir: str = SCRIPTS_DIR) -> bool:
    """Delete a stored script and its direction/cast sidecars."""
    path = os.path.join(scripts_dir, f"{slug}.json")
    if not os.path.exists(path):
        return False
    os.remove(path)
    remove_sidecars(slug, scripts_dir)
    return True


def save_session(summary: SessionSummary, slug: str, scripts_dir: str = SCRIPTS_DIR) -> str:
    """Store a session report as sessions/<slug>_<timestamp>.json."""
    stamp = summary.finished_at.strftime("%Y%m%dT%H%M%S")
    return write_artifact(
        os.path.join(scripts_dir, SESSIONS_SUBDIR),
        f"{slug}_{stamp}.json",
        summary_to_dict(summary),
    )


def load_settings(path: str = SETTINGS_FILE) -> dict:
    """Settings file merged over DEFAULT_SETTINGS.

    Unknown keys are dropped; a malformed file yields the defaults.
    """
    settings = dict(DEFAULT_SETTINGS)
    if not os.path.exists(path):
        return settings
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed settings file: %s — using defaults", path)
        return settings
    if not isinstance(data, dict):
        logger.warning("Settings file is not a JSON object: %s — using defaults", path)
        return settings
    for key, value in data.items():
        if key in settings:
            settings[key] = value
    return settings


def save_settings(settings: dict, path: str = SETTINGS_FILE) -> str:
    directory = os.path.dirname(path) or "."
    return write_artifact(directory, os.path.basename(path), settings)
