"""Voice output: edge-tts neural voice with an offline timing fallback."""

import asyncio
import logging
import os
import tempfile
import threading
import time
from abc import abstractmethod
from typing import Callable

import edge_tts
from pydub import AudioSegment

from scene_partner.constants import (
    TTS_RETRY_COUNT,
    TTS_RETRY_BASE_DELAY,
    FALLBACK_WORDS_PER_MINUTE,
    PLAYBACK_BLOCK_MS,
    NARRATOR_VOICE,
)
from scene_partner.effects import shape_delivery, to_float_samples
from scene_partner.models import VoiceProfile
from scene_partner.ports import VoiceOutput
from scene_partner.tones import prosody

logger = logging.getLogger(__name__)


def fetch_speech(text: str, voice: str, output_path: str, rate: str = "+0%", pitch: str = "+0Hz") -> None:
    """Synthesize one line to an MP3 file with retry logic.

    Sync wrapper around edge_tts.Communicate(). Retries on network errors,
    HTTP errors, or 0-byte output files.
    """
    last_error = None
    for attempt in range(TTS_RETRY_COUNT):
        try:
            communicate = edge_tts.Communicate(text, voice, rate=rate, pitch=pitch)
            asyncio.run(communicate.save(output_path))

            # Validate output: 0-byte file counts as failure
            if os.path.exists(output_path) and os.path.getsize(output_path) > 0:
                return

            last_error = Exception(f"TTS produced 0-byte file for: {text[:50]}...")
        except Exception as e:
            last_error = e

        # Exponential backoff
        if attempt < TTS_RETRY_COUNT - 1:
            delay = TTS_RETRY_BASE_DELAY * (2 ** attempt)
            time.sleep(delay)

    raise last_error


def synthesize_line(text: str, profile: VoiceProfile, room: bool = False) -> AudioSegment:
    """Synthesize a partner line and shape it for delivery."""
    fd, path = tempfile.mkstemp(suffix=".mp3")
    os.close(fd)
    try:
        fetch_speech(text, profile.voice_id or NARRATOR_VOICE, path, **prosody(profile))
        audio = AudioSegment.from_mp3(path)
    finally:
        os.remove(path)
    return shape_delivery(audio, profile, room=room)


def estimate_duration_ms(text: str, profile: VoiceProfile) -> int:
    """Speaking time of a line at the profile's rate, plus its pause."""
    words = max(len(text.split()), 1)
    wpm = FALLBACK_WORDS_PER_MINUTE * max(profile.rate, 0.1) / 0.5
    return int(words / wpm * 60000) + max(profile.post_pause_ms, 0)


class Utterance:
    """One accepted speak() call: its text, pause gate and cancel flag."""

    def __init__(self, text: str, profile: VoiceProfile, on_complete: Callable[[], None]):
        self.text = text
        self.profile = profile
        self.on_complete = on_complete
        self.cancelled = threading.Event()
        self.resumed = threading.Event()
        self.resumed.set()

    def cancel(self) -> None:
        self.cancelled.set()
        self.resumed.set()  # release a paused worker so it can exit

    def wait(self, seconds: float) -> bool:
        """Sleep for seconds of un-paused time. False if cancelled meanwhile."""
        remaining = seconds
        while remaining > 0:
            self.resumed.wait()
            if self.cancelled.is_set():
                return False
            step = min(remaining, PLAYBACK_BLOCK_MS / 1000)
            if self.cancelled.wait(step):
                return False
            remaining -= step
        return not self.cancelled.is_set()


class ThreadedVoiceOutput(VoiceOutput):
    """Runs each utterance on a worker thread and owns the callback contract.

    Subclasses implement deliver(), which blocks until the line is done or
    the utterance is cancelled.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Utterance | None = None

    @abstractmethod
    def deliver(self, utterance: Utterance) -> None:
        ...

    def speak(self, text: str, profile: VoiceProfile, on_complete: Callable[[], None]) -> None:
        utterance = Utterance(text, profile.clamped(), on_complete)
        with self._lock:
            previous, self._current = self._current, utterance
        if previous:
            previous.cancel()
        threading.Thread(
            target=self._run,
            args=(utterance,),
            daemon=True,
            name="scene-partner-voice",
        ).start()

    def stop(self) -> None:
        with self._lock:
            previous, self._current = self._current, None
        if previous:
            previous.cancel()

    def pause(self) -> None:
        with self._lock:
            if self._current:
                self._current.resumed.clear()

    def resume(self) -> None:
        with self._lock:
            if self._current:
                self._current.resumed.set()

    def is_speaking(self) -> bool:
        with self._lock:
            return self._current is not None and self._current.resumed.is_set()

    def _run(self, utterance: Utterance) -> None:
        try:
            self.deliver(utterance)
        except Exception:
            logger.exception("Voice output failed for: %s", utterance.text[:50])
        finally:
            self._finish(utterance)

    def _finish(self, utterance: Utterance) -> None:
        with self._lock:
            if self._current is not utterance or utterance.cancelled.is_set():
                return
            self._current = None
        utterance.on_complete()


class EstimatedVoiceOutput(ThreadedVoiceOutput):
    """Offline, audio-less voice: holds the turn for the estimated speaking time."""

    def __init__(self, time_scale: float = 1.0):
        super().__init__()
        self.time_scale = time_scale

    def deliver(self, utterance: Utterance) -> None:
        seconds = estimate_duration_ms(utterance.text, utterance.profile) / 1000
        utterance.wait(seconds * self.time_scale)


class SoundDevicePlayer:
    """Block-wise playback so pause and stop take effect within one block."""

    def __init__(self, block_ms: int = PLAYBACK_BLOCK_MS):
        self.block_ms = block_ms

    def play(self, audio: AudioSegment, utterance: Utterance) -> None:
        import sounddevice as sd  # needs the PortAudio shared library at import time

        samples = to_float_samples(audio)
        block = max(int(audio.frame_rate * self.block_ms / 1000), 1)
        with sd.OutputStream(samplerate=audio.frame_rate, channels=audio.channels, dtype="float32") as stream:
            for start in range(0, len(samples), block):
                utterance.resumed.wait()
                if utterance.cancelled.is_set():
                    return
                stream.write(samples[start:start + block])


class NeuralVoiceOutput(ThreadedVoiceOutput):
    """edge-tts neural voice played through the sound card.

    Any synthesis or playback failure falls back to offline timing for the
    rest of the line, so the completion callback still arrives.
    """

    def __init__(self, player: SoundDevicePlayer | None = None, room: bool = False):
        super().__init__()
        self.player = player or SoundDevicePlayer()
        self.room = room

    def deliver(self, utterance: Utterance) -> None:
        try:
            audio = synthesize_line(utterance.text, utterance.profile, room=self.room)
        except Exception as e:
            logger.warning("Neural voice unavailable (%s) — using offline timing", e)
            self._fallback(utterance)
            return

        if utterance.cancelled.is_set():
            return
        try:
            self.player.play(audio, utterance)
        except Exception as e:
            logger.warning("Playback failed (%s) — using offline timing", e)
            self._fallback(utterance)

    def _fallback(self, utterance: Utterance) -> None:
        utterance.wait(estimate_duration_ms(utterance.text, utterance.profile) / 1000)
