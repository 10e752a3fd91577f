"""Rehearsal state machine.

    idle ──start()──► playing_partner ──voice done──► waiting_for_user
                            ▲                                │
                            └──────advance() / speech────────┘
                                        │
                                  (end of script)
                                        │
                                     finished

pause()/resume() work from either active state. stop(), jump() and back()
work from anywhere. Headings and stage directions are passed through
without stopping.

All calls, including port callbacks arriving on worker threads, are
serialized through one dispatcher. Nothing here blocks; "waiting" is only a
status value.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable

from scene_partner.constants import (
    IDLE,
    PLAYING_PARTNER,
    WAITING_FOR_USER,
    PAUSED,
    FINISHED,
    NARRATOR_NAME,
)
from scene_partner.models import Line, RehearsalState, Script, ToneAnalysis
from scene_partner.ports import SpeechInput, VoiceOutput
from scene_partner.tones import delivery_notes, merge, profile_for, tones_for

logger = logging.getLogger(__name__)


class SerialDispatcher:
    """Runs submitted calls one at a time, in submission order.

    The first caller drains the queue on its own thread; calls submitted
    meanwhile (from any thread, or re-entrantly from inside a running call)
    are queued and run by that drainer before it returns.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._queue = deque()
        self._draining = False

    def __call__(self, fn: Callable, *args) -> None:
        with self._lock:
            self._queue.append((fn, args))
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._draining = False
                        return
                    fn, args = self._queue.popleft()
                fn(*args)
        except BaseException:
            with self._lock:
                self._draining = False
            raise


class RehearsalEngine:
    """Drives a rehearsal of one script.

    The engine speaks partner lines through a VoiceOutput, waits on user
    lines (listening through an optional SpeechInput) and exposes its state
    read-only. Pass dispatch= to run transitions on a host event loop, for
    example ``lambda fn, *a: loop.call_soon_threadsafe(fn, *a)``.
    """

    def __init__(
        self,
        script: Script,
        voice: VoiceOutput,
        speech: SpeechInput | None = None,
        user_characters=(),
        tone_analysis: ToneAnalysis | None = None,
        overrides: dict | None = None,
        listen_enabled: bool = True,
        dispatch: Callable | None = None,
    ):
        self._script = script
        self._voice = voice
        self._speech = speech
        self._analysis = tone_analysis
        self._overrides = {name.upper(): value for name, value in (overrides or {}).items()}
        self._state = RehearsalState(user_characters={name.upper() for name in user_characters})
        self._listen_enabled = listen_enabled
        self._listening = False
        self._turn = 0
        self._completed_while_paused = False
        self._subscribers: list[Callable[[RehearsalState], None]] = []
        self._last_published = self._state.copy()
        self._lock = threading.RLock()
        self._dispatch = dispatch or SerialDispatcher()

    # -- observation -----------------------------------------------------------

    @property
    def script(self) -> Script:
        return self._script

    @property
    def state(self) -> RehearsalState:
        """A copy of the current state; mutating it has no effect."""
        with self._lock:
            return self._state.copy()

    @property
    def status(self) -> str:
        return self._state.status

    @property
    def line_count(self) -> int:
        return len(self._script.lines)

    @property
    def current_line(self) -> Line | None:
        index = self._state.current_line_index
        if 0 <= index < len(self._script.lines):
            return self._script.lines[index]
        return None

    @property
    def is_listening_for_user(self) -> bool:
        return self._listening

    @property
    def listen_enabled(self) -> bool:
        return self._listen_enabled

    def delivery_note(self) -> str | None:
        """Director's note for the current line, if the direction has one."""
        return delivery_notes(self._analysis).get(self._state.current_line_index)

    def subscribe(self, callback: Callable[[RehearsalState], None]) -> Callable[[], None]:
        """Call callback with a state copy after every change. Returns an unsubscriber."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # -- configuration ---------------------------------------------------------

    def set_user_characters(self, names) -> None:
        self._submit(self._set_user_characters, {name.upper() for name in names})

    def set_improv_mode(self, on: bool) -> None:
        self._submit(self._set_improv_mode, bool(on))

    def inject_tone_analysis(self, analysis: ToneAnalysis | None) -> None:
        self._submit(self._set_tone_analysis, analysis)

    def toggle_listen_mode(self) -> None:
        self._submit(self._toggle_listen_mode)

    # -- controls --------------------------------------------------------------

    def start(self, from_index: int = 0) -> None:
        self._submit(self._start, from_index)

    def pause(self) -> None:
        self._submit(self._pause)

    def resume(self) -> None:
        self._submit(self._resume)

    def advance(self) -> None:
        """Manual tap-to-advance past the user's line."""
        self._submit(self._advance)

    def back(self) -> None:
        self._submit(self._back)

    def jump(self, index: int) -> None:
        self._submit(self._jump, index)

    def stop(self) -> None:
        self._submit(self._stop)

    # -- dispatch --------------------------------------------------------------

    def _submit(self, fn: Callable, *args) -> None:
        self._dispatch(self._run, fn, args)

    def _run(self, fn: Callable, args: tuple) -> None:
        with self._lock:
            fn(*args)
            snapshot = self._state.copy()
            if snapshot == self._last_published:
                return
            self._last_published = snapshot
            subscribers = list(self._subscribers)
            for callback in subscribers:
                callback(snapshot.copy())

    # -- transitions (run on the dispatcher only) -------------------------------

    def _set_user_characters(self, names: set[str]) -> None:
        self._state.user_characters = names

    def _set_improv_mode(self, on: bool) -> None:
        self._state.is_improv_mode_on = on

    def _set_tone_analysis(self, analysis: ToneAnalysis | None) -> None:
        self._analysis = analysis

    def _toggle_listen_mode(self) -> None:
        self._listen_enabled = not self._listen_enabled
        if not self._listen_enabled:
            self._stop_listening()
        elif self._state.status == WAITING_FOR_USER and not self._listening:
            self._start_listening()

    def _start(self, from_index: int) -> None:
        if self._state.status not in (IDLE, FINISHED):
            return
        self._state.current_line_index = max(from_index, 0)
        self._state.session_started_at = datetime.now(timezone.utc)
        self._state.completed_line_indices = set()
        self._completed_while_paused = False
        logger.info("Rehearsal of %r started at line %d", self._script.title, self._state.current_line_index)
        self._evaluate()

    def _pause(self) -> None:
        previous = self._state.status
        if previous not in (PLAYING_PARTNER, WAITING_FOR_USER):
            return
        self._state.status = PAUSED
        self._stop_listening()
        if previous == PLAYING_PARTNER:
            self._voice.pause()

    def _resume(self) -> None:
        if self._state.status != PAUSED:
            return
        line = self.current_line
        if line is not None and line.is_dialogue and self._is_partner(line):
            self._state.status = PLAYING_PARTNER
            if self._completed_while_paused:
                # the line ended just as we paused; nothing left to play
                self._completed_while_paused = False
                self._complete_current_line()
            else:
                self._voice.resume()
        else:
            self._state.status = WAITING_FOR_USER
            self._start_listening()

    def _advance(self) -> None:
        if self._state.status != WAITING_FOR_USER:
            return
        self._stop_listening()
        self._complete_current_line()

    def _back(self) -> None:
        self._move_to(self._previous_dialogue_index(self._state.current_line_index))

    def _jump(self, index: int) -> None:
        if not 0 <= index < len(self._script.lines):
            return
        self._move_to(index)

    def _move_to(self, index: int) -> None:
        self._halt_ports()
        self._state.current_line_index = index
        self._state.status = IDLE
        if self._state.session_started_at is None:
            self._state.session_started_at = datetime.now(timezone.utc)
        self._evaluate()

    def _stop(self) -> None:
        self._halt_ports()
        self._state.status = IDLE
        self._state.current_line_index = 0

    # -- port callbacks --------------------------------------------------------

    def _on_voice_complete(self, turn: int) -> None:
        if turn != self._turn:
            return
        if self._state.status == PAUSED:
            self._completed_while_paused = True
            return
        if self._state.status != PLAYING_PARTNER:
            return
        self._complete_current_line()

    def _on_speech_result(self, turn: int, transcript: str) -> None:
        if turn != self._turn or self._state.status != WAITING_FOR_USER:
            return
        self._listening = False
        # an empty transcript (timeout, no speech) still ends the user's turn
        logger.info("User line %d done, heard: %r", self._state.current_line_index, transcript)
        self._complete_current_line()

    # -- line evaluation -------------------------------------------------------

    def _evaluate(self) -> None:
        lines = self._script.lines
        while True:
            index = self._state.current_line_index
            if index >= len(lines):
                self._finish()
                return
            if lines[index].is_dialogue:
                break
            if index + 1 >= len(lines):
                self._finish()
                return
            self._state.current_line_index = index + 1

        line = lines[self._state.current_line_index]
        self._turn += 1
        if self._is_partner(line):
            self._speak(line)
        else:
            self._state.status = WAITING_FOR_USER
            self._start_listening()

    def _complete_current_line(self) -> None:
        self._state.completed_line_indices.add(self._state.current_line_index)
        next_index = self._state.current_line_index + 1
        if next_index >= len(self._script.lines):
            self._finish()
            return
        self._state.current_line_index = next_index
        self._evaluate()

    def _finish(self) -> None:
        self._state.status = FINISHED
        logger.info(
            "Rehearsal finished: %d lines completed",
            len(self._state.completed_line_indices),
        )

    def _is_partner(self, line: Line) -> bool:
        if not line.speaker:
            return True
        return line.speaker.upper() not in self._state.user_characters

    def _speak(self, line: Line) -> None:
        speaker = (line.speaker or NARRATOR_NAME).upper()
        profile = profile_for(tones_for(speaker, self._analysis), self._overrides, speaker)
        if self._analysis and speaker in self._analysis.tts_profiles:
            profile = merge(profile, self._analysis.tts_profiles[speaker])

        self._state.status = PLAYING_PARTNER
        turn = self._turn
        logger.debug("Speaking line %d as %s", line.index, speaker)
        self._voice.speak(
            line.text,
            profile,
            lambda: self._dispatch(self._run, self._on_voice_complete, (turn,)),
        )

    def _start_listening(self) -> None:
        if not self._listen_enabled or self._speech is None:
            return
        if not self._speech.is_permission_granted():
            logger.info("Microphone not available — waiting for manual advance")
            self._speech.request_permission()
            return

        turn = self._turn
        self._listening = True
        try:
            self._speech.start_listening(
                lambda transcript: self._dispatch(self._run, self._on_speech_result, (turn, transcript)),
            )
        except Exception as e:
            self._listening = False
            logger.warning("Could not start listening (%s) — waiting for manual advance", e)

    def _stop_listening(self) -> None:
        if self._speech is not None:
            self._speech.stop_listening()
        self._listening = False

    def _halt_ports(self) -> None:
        self._voice.stop()
        self._stop_listening()
        self._turn += 1
        self._completed_while_paused = False

    def _previous_dialogue_index(self, index: int) -> int:
        i = min(index, len(self._script.lines)) - 1
        while i >= 0:
            if self._script.lines[i].is_dialogue:
                return i
            i -= 1
        return 0
