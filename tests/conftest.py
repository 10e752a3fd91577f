"""Shared fixtures for scene partner tests."""

import pytest

from scene_partner.parser import parse_script
from scene_partner.ports import SpeechInput, VoiceOutput


SCENE_TEXT = """\
SCENE 1
(A bare stage.)

ALEX
Are you ready?

SAM
I think so.

ALEX
Then begin.
"""

TWO_SCENE_TEXT = """\
Title: The Audition

INT. THEATRE - NIGHT
ALEX: Are you ready?
SAM: I think so.

SCENE 2
[Lights up.]
ALEX: Then begin.
SAM (V.O.): Here goes.
ALEX: Louder.
"""


class FakeVoice(VoiceOutput):
    """Records speak() calls; completes them when told to (or at once)."""

    def __init__(self, auto_complete=False):
        self.auto_complete = auto_complete
        self.spoken = []
        self.callbacks = []
        self.stops = 0
        self.pauses = 0
        self.resumes = 0

    def speak(self, text, profile, on_complete):
        self.spoken.append((text, profile))
        self.callbacks.append(on_complete)
        if self.auto_complete:
            on_complete()

    def complete(self):
        self.callbacks[-1]()

    def stop(self):
        self.stops += 1

    def pause(self):
        self.pauses += 1

    def resume(self):
        self.resumes += 1

    def is_speaking(self):
        return False


class FakeSpeech(SpeechInput):
    """Records listens; delivers a transcript when told to."""

    def __init__(self, granted=True, fail=False):
        self.granted = granted
        self.fail = fail
        self.callbacks = []
        self.stops = 0
        self.permission_requests = 0

    def start_listening(self, on_result):
        if self.fail:
            raise OSError("no input device")
        self.callbacks.append(on_result)

    def stop_listening(self):
        self.stops += 1

    def is_permission_granted(self):
        return self.granted

    def request_permission(self):
        self.permission_requests += 1

    def respond(self, transcript=""):
        self.callbacks[-1](transcript)


@pytest.fixture
def scene_script():
    """Heading, stage direction, then ALEX / SAM / ALEX (dialogue at 2, 3, 4)."""
    return parse_script(SCENE_TEXT, title="The Audition")


@pytest.fixture
def two_scene_script():
    return parse_script(TWO_SCENE_TEXT, title="The Audition")


@pytest.fixture
def fake_voice():
    return FakeVoice()


@pytest.fixture
def auto_voice():
    return FakeVoice(auto_complete=True)


@pytest.fixture
def fake_speech():
    return FakeSpeech()
