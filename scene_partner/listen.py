"""Speech input: listen-timing policy and a microphone voice-activity listener."""

import logging
import threading
from typing import Callable

import numpy as np

from scene_partner.constants import (
    LISTEN_NO_SPEECH_SECONDS,
    LISTEN_MAX_SECONDS,
    LISTEN_SILENCE_SECONDS,
    VAD_RMS_THRESHOLD,
    VAD_SAMPLE_RATE,
    VAD_BLOCK_SIZE,
)
from scene_partner.ports import SpeechInput

logger = logging.getLogger(__name__)


class TimedListener(SpeechInput):
    """Implements the listen-timing contract; subclasses supply the audio.

    A listen ends when the first of these fires:
      - no speech at all for no_speech_seconds
      - silence_seconds of quiet after speech has been heard
      - max_seconds since listening started
      - finish_now(), for recognizers that know the utterance is final
    The result callback runs once, on the timer (or caller) thread.
    """

    def __init__(
        self,
        no_speech_seconds: float = LISTEN_NO_SPEECH_SECONDS,
        silence_seconds: float = LISTEN_SILENCE_SECONDS,
        max_seconds: float = LISTEN_MAX_SECONDS,
    ):
        self.no_speech_seconds = no_speech_seconds
        self.silence_seconds = silence_seconds
        self.max_seconds = max_seconds
        self._lock = threading.Lock()
        self._on_result: Callable[[str], None] | None = None
        self._session = 0
        self._transcript = ""
        self._heard_speech = False
        self._silence_timer: threading.Timer | None = None
        self._deadline_timer: threading.Timer | None = None

    # -- hooks for subclasses ------------------------------------------------

    def open_stream(self) -> None:
        """Start capturing audio. May raise; the listen is then abandoned."""

    def close_stream(self) -> None:
        """Stop capturing audio. Must tolerate being called when closed."""

    def is_permission_granted(self) -> bool:
        return True

    # -- SpeechInput ---------------------------------------------------------

    @property
    def is_listening(self) -> bool:
        with self._lock:
            return self._on_result is not None

    def start_listening(self, on_result: Callable[[str], None]) -> None:
        with self._lock:
            if self._on_result is not None:
                return
            self._session += 1
            self._on_result = on_result
            self._transcript = ""
            self._heard_speech = False
            session = self._session
            self._silence_timer = self._arm(self.no_speech_seconds, session)
            self._deadline_timer = self._arm(self.max_seconds, session)
        try:
            self.open_stream()
        except Exception:
            self._cancel(session)
            raise

    def stop_listening(self) -> None:
        with self._lock:
            session = self._session
        self._cancel(session)

    # -- feeding -------------------------------------------------------------

    def hear(self, transcript: str) -> None:
        """Report the best transcript so far. Restarts the silence cutoff."""
        with self._lock:
            if self._on_result is None:
                return
            if transcript:
                self._transcript = transcript
            self._restart_silence_timer()

    def speech_detected(self) -> None:
        """Report speech without a transcript (voice activity only)."""
        with self._lock:
            if self._on_result is None:
                return
            self._restart_silence_timer()

    def finish_now(self) -> None:
        with self._lock:
            session = self._session
        self._expire(session)

    # -- internals -----------------------------------------------------------

    def _arm(self, seconds: float, session: int) -> threading.Timer:
        timer = threading.Timer(seconds, self._expire, args=(session,))
        timer.daemon = True
        timer.start()
        return timer

    def _restart_silence_timer(self) -> None:
        self._heard_speech = True
        if self._silence_timer:
            self._silence_timer.cancel()
        self._silence_timer = self._arm(self.silence_seconds, self._session)

    def _take(self, session: int) -> Callable[[str], None] | None:
        """Detach the pending callback if session is still current. Lock held."""
        if session != self._session or self._on_result is None:
            return None
        callback, self._on_result = self._on_result, None
        for timer in (self._silence_timer, self._deadline_timer):
            if timer:
                timer.cancel()
        self._silence_timer = self._deadline_timer = None
        return callback

    def _cancel(self, session: int) -> None:
        with self._lock:
            callback = self._take(session)
        if callback:
            self.close_stream()

    def _expire(self, session: int) -> None:
        with self._lock:
            callback = self._take(session)
            transcript = self._transcript
        if callback is None:
            return
        self.close_stream()
        logger.debug("Listen finished (speech heard: %s): %r", self._heard_speech, transcript)
        callback(transcript)


class VoiceActivityListener(TimedListener):
    """Microphone listener that detects when the user speaks and stops.

    It does not transcribe: the result is always "". Speech is any input
    block whose RMS level is above threshold.
    """

    def __init__(
        self,
        threshold: float = VAD_RMS_THRESHOLD,
        sample_rate: int = VAD_SAMPLE_RATE,
        block_size: int = VAD_BLOCK_SIZE,
        **timing,
    ):
        super().__init__(**timing)
        self.threshold = threshold
        self.sample_rate = sample_rate
        self.block_size = block_size
        self._stream = None

    @staticmethod
    def level(samples) -> float:
        data = np.asarray(samples, dtype=np.float32)
        if data.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(data))))

    def is_permission_granted(self) -> bool:
        try:
            import sounddevice as sd
            sd.query_devices(kind="input")
        except Exception as e:
            logger.info("No microphone available: %s", e)
            return False
        return True

    def open_stream(self) -> None:
        import sounddevice as sd

        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            blocksize=self.block_size,
            channels=1,
            dtype="float32",
            callback=self._on_audio,
        )
        self._stream.start()

    def close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()

    def _on_audio(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        if self.level(indata) >= self.threshold:
            self.speech_detected()
