"""Capabilities the rehearsal engine depends on but does not implement."""

from abc import ABC, abstractmethod
from typing import Callable

from scene_partner.models import VoiceProfile


class VoiceOutput(ABC):
    """Speaks partner lines.

    Contract:
      - speak() while speaking supersedes the previous utterance; its
        on_complete is never called.
      - every accepted speak() calls on_complete exactly once when the line
        has finished, possibly on another thread and possibly before speak()
        returns. stop() cancels without calling it.
      - backends that can fail (network voices) fall back internally so the
        callback is still guaranteed.
    """

    @abstractmethod
    def speak(self, text: str, profile: VoiceProfile, on_complete: Callable[[], None]) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def is_speaking(self) -> bool:
        ...


class SpeechInput(ABC):
    """Listens for the user's line.

    Contract:
      - on_result is called at most once per start_listening(), with the best
        transcript available ("" on timeout or failure).
      - listening ends after an overall maximum, or after a short silence once
        speech has been heard.
      - stop_listening() is idempotent and suppresses the pending result.
    """

    @abstractmethod
    def start_listening(self, on_result: Callable[[str], None]) -> None:
        ...

    @abstractmethod
    def stop_listening(self) -> None:
        ...

    @abstractmethod
    def is_permission_granted(self) -> bool:
        ...

    def request_permission(self) -> None:
        """Ask the platform for microphone access. No-op by default."""
