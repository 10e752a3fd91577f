"""CLI interface with subcommand routing and the terminal rehearsal loop."""

import argparse
import logging
import os
import shutil
import sys
import threading

from scene_partner.constants import (
    SCRIPTS_DIR,
    SETTINGS_FILE,
    NARRATOR_VOICE,
    DIALOGUE,
    SCENE_HEADING,
    PLAYING_PARTNER,
    WAITING_FOR_USER,
    PAUSED,
    FINISHED,
    CAST_SIDECAR_SUFFIX,
    TONE_SIDECAR_SUFFIX,
    VERSION,
)
from scene_partner.engine import RehearsalEngine
from scene_partner.listen import VoiceActivityListener
from scene_partner.models import Script, ToneAnalysis
from scene_partner.parser import parse_script, extract_title
from scene_partner.store import (
    slug_from_path,
    save_script,
    load_script,
    list_scripts,
    delete_script,
    remove_sidecars,
    save_session,
    load_settings,
    save_settings,
)
from scene_partner.summary import summarize
from scene_partner.tts import EstimatedVoiceOutput, NeuralVoiceOutput
from scene_partner.voices import (
    VOICE_POOL,
    build_overrides,
    cast_voices,
    load_cast,
    load_tone_analysis,
)


def _check_ffmpeg():
    """Verify ffmpeg is installed (pydub needs it to decode the neural voice)."""
    if not shutil.which("ffmpeg"):
        print("Error: ffmpeg is required for the neural voice but not found.", file=sys.stderr)
        print("Install it, or rehearse with --text-only / 'set local-only on'.", file=sys.stderr)
        raise SystemExit(1)


def _get_script(slug: str) -> Script:
    """Load a stored script, exit if missing."""
    script = load_script(slug, scripts_dir=SCRIPTS_DIR)
    if script is None:
        print(f"Error: Script '{slug}' not found.", file=sys.stderr)
        print("Run 'scene-partner new <file>' to import a script.", file=sys.stderr)
        raise SystemExit(1)
    return script


def _sidecar_path(slug: str) -> str:
    """Path whose sidecars (<slug>.tone.json, <slug>.cast.json) belong to a stored script."""
    return os.path.join(SCRIPTS_DIR, f"{slug}.json")


def cmd_new(args):
    """Import a script from a text file."""
    file_path = args.file

    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    with open(file_path) as f:
        text = f.read()

    if not text.strip():
        print(f"Error: File is empty: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    slug = slug_from_path(args.title or file_path)
    if load_script(slug, scripts_dir=SCRIPTS_DIR) is not None and not args.force:
        print(f"Error: Script '{slug}' already exists.", file=sys.stderr)
        print("Use --force to re-import it.", file=sys.stderr)
        raise SystemExit(1)

    title = args.title or extract_title(text) or os.path.splitext(os.path.basename(file_path))[0]
    script = parse_script(text, title=title)
    dialogue = [line for line in script.lines if line.kind == DIALOGUE]
    if not dialogue:
        print(f"Error: No dialogue found in: {file_path}", file=sys.stderr)
        print("Put character names in CAPS on their own line, or write 'NAME: line'.", file=sys.stderr)
        raise SystemExit(1)

    save_script(script, slug, scripts_dir=SCRIPTS_DIR)

    # Direction and casting sidecars travel with the script; stale ones from
    # an earlier import of the same slug must not
    base = os.path.splitext(file_path)[0]
    provided = [s for s in (TONE_SIDECAR_SUFFIX, CAST_SIDECAR_SUFFIX) if os.path.exists(base + s)]
    remove_sidecars(slug, scripts_dir=SCRIPTS_DIR, keep=provided)
    for suffix in provided:
        shutil.copyfile(base + suffix, os.path.join(SCRIPTS_DIR, slug + suffix))
        print(f"Copied {os.path.basename(base + suffix)}")

    print(f"Imported script: {slug} ({script.title})")
    print(f"Parsed {len(script.lines)} lines ({len(dialogue)} dialogue) in {len(script.scenes)} scene(s)")
    print("Characters: " + ", ".join(f"{c.name} ({c.line_count})" for c in script.characters))
    print(f"Run 'scene-partner rehearse {slug} --as <NAME>' to start.")


def cmd_list(args):
    """List stored scripts."""
    slugs = list_scripts(scripts_dir=SCRIPTS_DIR)
    if not slugs:
        print("No scripts found.")
        return
    print("Scripts:")
    for slug in slugs:
        script = load_script(slug, scripts_dir=SCRIPTS_DIR)
        names = ", ".join(c.name for c in script.characters)
        print(f"  {slug:<24} {script.title} [{names}]")


def cmd_show(args):
    """Show scenes, characters and lines of a script."""
    script = _get_script(args.slug)
    print(f"Script: {script.title}")
    print("Scenes:")
    for scene in script.scenes:
        print(f"  {scene.index + 1}. {scene.heading} ({len(scene.line_indices)} lines)")
    print("Characters:")
    for character in script.characters:
        print(f"  {character.name:<15} {character.line_count} lines")

    if args.only:
        lines = script.lines_for(args.only)
        if not lines:
            print(f"Error: No lines for '{args.only}'.", file=sys.stderr)
            raise SystemExit(1)
    else:
        lines = script.lines
    print("Lines:")
    for line in lines:
        print(f"  {line.index:>4}  {_format_line(line)}")


def _format_line(line) -> str:
    if line.kind == DIALOGUE:
        return f"{line.speaker}: {line.text}"
    if line.kind == SCENE_HEADING:
        return f"== {line.text} =="
    return line.text


def _build_engine(script: Script, slug: str, users: set[str], args, settings: dict) -> RehearsalEngine:
    """Resolve ports, casting and direction once, then hand them to the engine."""
    analysis = load_tone_analysis(_sidecar_path(slug))
    if args.tone:
        analysis = analysis or ToneAnalysis()
        analysis.scene_tone = list(args.tone)

    voices = cast_voices(
        script,
        user_characters=users,
        cast=load_cast(_sidecar_path(slug)),
        narrator_voice=settings.get("voice") or NARRATOR_VOICE,
    )

    if args.text_only or settings.get("local_only"):
        voice = EstimatedVoiceOutput()
    else:
        _check_ffmpeg()
        voice = NeuralVoiceOutput(room=bool(settings.get("room_reverb")))

    speech = None
    if args.listen or settings.get("listen_mode"):
        speech = VoiceActivityListener()

    return RehearsalEngine(
        script,
        voice,
        speech=speech,
        user_characters=users,
        tone_analysis=analysis,
        overrides=build_overrides(voices),
    )


def cmd_rehearse(args):
    """Rehearse a script in the terminal."""
    script = _get_script(args.slug)
    settings = load_settings(SETTINGS_FILE)

    users = {name.upper() for name in args.characters}
    known = {c.name for c in script.characters}
    unknown = sorted(users - known)
    if unknown:
        print(f"Error: Unknown character(s): {', '.join(unknown)}", file=sys.stderr)
        print(f"Characters in this script: {', '.join(sorted(known))}", file=sys.stderr)
        raise SystemExit(1)

    engine = _build_engine(script, args.slug, users, args, settings)
    changed = threading.Event()
    shown = {"key": None}

    def on_change(state):
        key = (state.status, state.current_line_index)
        if key != shown["key"]:
            shown["key"] = key
            _print_state(engine, state)
        changed.set()

    engine.subscribe(on_change)
    print(f"Rehearsing {script.title} as {', '.join(sorted(users))}")
    print("Enter = next line, p = pause/resume, b = back, j N = jump, l = listen on/off, q = quit")
    engine.start(args.from_index)

    try:
        _run_loop(engine, changed)
    except (KeyboardInterrupt, EOFError):
        print()
    finally:
        if engine.status != FINISHED:
            engine.stop()

    summary = summarize(script, engine.state)
    path = save_session(summary, args.slug, scripts_dir=SCRIPTS_DIR)
    print(f"Completed {summary.completed_total}/{summary.dialogue_total} dialogue lines "
          f"({summary.user_lines_completed} yours, {summary.partner_lines_completed} partner)")
    for scene in summary.scenes:
        print(f"  {scene.heading:<30} {scene.completed}/{scene.total}")
    print(f"Session saved to {path}")


def _run_loop(engine: RehearsalEngine, changed: threading.Event) -> None:
    while True:
        status = engine.status
        if status == FINISHED:
            return
        if status == PLAYING_PARTNER:
            changed.wait(0.1)
            changed.clear()
            continue
        if status not in (WAITING_FOR_USER, PAUSED):
            return

        prompted = (engine.status, engine.state.current_line_index)
        command = input("> ").strip().lower()
        if command == "q":
            return
        if not command and (engine.status, engine.state.current_line_index) != prompted:
            # the listener moved the scene on while input() was blocked
            print("(scene moved on, press Enter again to advance)")
            continue
        if command == "p" and engine.status == PAUSED:
            engine.resume()
        elif command == "p":
            engine.pause()
        elif command == "b":
            engine.back()
        elif command == "l":
            engine.toggle_listen_mode()
            print(f"Listen mode {'on' if engine.listen_enabled else 'off'}")
        elif command.startswith("j"):
            parts = command.split()
            if len(parts) == 2 and parts[1].isdigit():
                engine.jump(int(parts[1]))
            else:
                print("Usage: j <line number>")
        elif engine.status == PAUSED:
            engine.resume()
        else:
            engine.advance()


def _print_state(engine: RehearsalEngine, state) -> None:
    line = engine.current_line
    if state.status == PLAYING_PARTNER and line:
        print(f"  {line.speaker or 'NARRATOR'}: {line.text}")
    elif state.status == WAITING_FOR_USER and line:
        hint = " (listening…)" if engine.is_listening_for_user else ""
        print(f"* {line.speaker} (you): {line.text}{hint}")
    elif state.status == PAUSED:
        print("[paused]")
    elif state.status == FINISHED:
        print("[end of script]")
    note = engine.delivery_note()
    if note and state.status in (PLAYING_PARTNER, WAITING_FOR_USER):
        print(f"    note: {note}")


def cmd_delete(args):
    """Delete a stored script."""
    if not delete_script(args.slug, scripts_dir=SCRIPTS_DIR):
        print(f"Error: Script '{args.slug}' not found.", file=sys.stderr)
        raise SystemExit(1)
    print(f"Deleted: {args.slug}")


def _parse_on_off(key: str, values: list[str]) -> bool:
    if not values or values[0] not in ("on", "off"):
        print(f"Error: 'set {key}' requires 'on' or 'off'", file=sys.stderr)
        raise SystemExit(1)
    return values[0] == "on"


def cmd_set(args):
    """Update settings."""
    key = args.key
    values = args.values

    valid_keys = {"local-only", "listen", "voice", "reverb"}
    if key not in valid_keys:
        print(f"Error: Invalid setting key: {key}", file=sys.stderr)
        print(f"Valid keys: {', '.join(sorted(valid_keys))}", file=sys.stderr)
        raise SystemExit(1)

    settings = load_settings(SETTINGS_FILE)

    if key == "local-only":
        settings["local_only"] = _parse_on_off(key, values)
        print(f"Updated: local-only → {values[0]}")

    elif key == "listen":
        settings["listen_mode"] = _parse_on_off(key, values)
        print(f"Updated: listen → {values[0]}")

    elif key == "reverb":
        settings["room_reverb"] = _parse_on_off(key, values)
        print(f"Updated: reverb → {values[0]}")

    elif key == "voice":
        if not values:
            print("Error: 'set voice' requires <voice_id> (or 'default')", file=sys.stderr)
            raise SystemExit(1)
        settings["voice"] = "" if values[0] == "default" else values[0]
        print(f"Updated: voice → {settings['voice'] or NARRATOR_VOICE}")

    save_settings(settings, SETTINGS_FILE)


def cmd_voices(args):
    """List available voices."""
    filter_str = args.filter.lower() if args.filter else None
    voices = [NARRATOR_VOICE] + VOICE_POOL
    if filter_str:
        voices = [v for v in voices if filter_str in v.lower()]
    if not voices:
        print("No matching voices found.")
        return
    print("Available voices:")
    for v in voices:
        print(f"  {v}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scene-partner",
        description="Scene Partner — rehearse a script with a voiced scene partner",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # new
    new_parser = subparsers.add_parser("new", help="Import a script from a text file")
    new_parser.add_argument("file", help="Path to the script text file")
    new_parser.add_argument("--title", help="Script title (default: Title: header or filename)")
    new_parser.add_argument("--force", action="store_true", help="Replace an existing script")
    new_parser.set_defaults(func=cmd_new)

    # list
    list_parser = subparsers.add_parser("list", help="List stored scripts")
    list_parser.set_defaults(func=cmd_list)

    # show
    show_parser = subparsers.add_parser("show", help="Show a script")
    show_parser.add_argument("slug", help="Script slug")
    show_parser.add_argument("--only", help="Only this character's lines")
    show_parser.set_defaults(func=cmd_show)

    # rehearse
    rehearse_parser = subparsers.add_parser("rehearse", help="Rehearse a script")
    rehearse_parser.add_argument("slug", help="Script slug")
    rehearse_parser.add_argument("--as", dest="characters", action="append", required=True,
                                 metavar="NAME", help="Character you play (repeatable)")
    rehearse_parser.add_argument("--from", dest="from_index", type=int, default=0,
                                 help="Start at this line index")
    rehearse_parser.add_argument("--text-only", action="store_true",
                                 help="No audio: partner lines are paced silently")
    rehearse_parser.add_argument("--listen", action="store_true",
                                 help="Advance your lines when you stop speaking")
    rehearse_parser.add_argument("--tone", action="append", help="Scene tone (repeatable)")
    rehearse_parser.set_defaults(func=cmd_rehearse)

    # set
    set_parser = subparsers.add_parser("set", help="Update settings")
    set_parser.add_argument("key", help="Setting key")
    set_parser.add_argument("values", nargs="*", help="Setting value(s)")
    set_parser.set_defaults(func=cmd_set)

    # delete
    delete_parser = subparsers.add_parser("delete", help="Delete a stored script")
    delete_parser.add_argument("slug", help="Script slug")
    delete_parser.set_defaults(func=cmd_delete)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.set_defaults(func=cmd_voices)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
