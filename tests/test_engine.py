"""Tests for the rehearsal state machine."""

import threading

import pytest

from scene_partner.constants import (
    DIALOGUE,
    FINISHED,
    IDLE,
    PAUSED,
    PLAYING_PARTNER,
    STAGE_DIRECTION,
    WAITING_FOR_USER,
)
from scene_partner.engine import RehearsalEngine, SerialDispatcher
from scene_partner.models import DEFAULT_PROFILE, Line, Script, ToneAnalysis, tone_analysis_from_dict
from scene_partner.parser import parse_script
from scene_partner.tones import TONE_ADJUSTMENTS
from scene_partner.tts import EstimatedVoiceOutput

from conftest import FakeSpeech


def _engine(script, voice, users=("SAM",), **kwargs):
    return RehearsalEngine(script, voice, user_characters=users, **kwargs)


# --- start ---

def test_initial_state(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    assert engine.status == IDLE
    assert engine.state.user_characters == {"SAM"}
    assert fake_voice.spoken == []


def test_start_skips_to_first_partner_line(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 2
    assert engine.state.session_started_at is not None
    assert [text for text, _ in fake_voice.spoken] == ["Are you ready?"]


def test_start_on_user_line_waits(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice, users=("ALEX", "SAM"))
    engine.start()
    assert engine.status == WAITING_FOR_USER
    assert engine.state.current_line_index == 2
    assert fake_voice.spoken == []


def test_start_from_index(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start(3)
    assert engine.status == WAITING_FOR_USER
    assert engine.state.current_line_index == 3


def test_start_negative_index_clamps(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start(-5)
    assert engine.state.current_line_index == 2


def test_start_ignored_while_running(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.start(4)
    assert engine.state.current_line_index == 2
    assert len(fake_voice.spoken) == 1


def test_user_characters_case_insensitive(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice, users=("sam",))
    engine.start()
    fake_voice.complete()
    assert engine.status == WAITING_FOR_USER


# --- full run ---

def test_full_run(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    fake_voice.complete()
    assert engine.status == WAITING_FOR_USER
    assert engine.state.current_line_index == 3
    engine.advance()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 4
    fake_voice.complete()

    state = engine.state
    assert state.status == FINISHED
    assert state.current_line_index == 4  # finishing keeps the last line
    assert state.completed_line_indices == scene_script.dialogue_indices()


def test_all_partner_run_finishes(scene_script, auto_voice):
    engine = _engine(scene_script, auto_voice, users=())
    engine.start()
    assert engine.status == FINISHED
    assert [text for text, _ in auto_voice.spoken] == ["Are you ready?", "I think so.", "Then begin."]


def test_partner_lines_spoken_in_order(two_scene_script, auto_voice):
    engine = _engine(two_scene_script, auto_voice, users=())
    engine.start()
    expected = [line.text for line in two_scene_script.lines if line.kind == DIALOGUE]
    assert [text for text, _ in auto_voice.spoken] == expected


def test_completed_only_dialogue(two_scene_script, auto_voice):
    engine = _engine(two_scene_script, auto_voice, users=())
    engine.start()
    assert engine.state.completed_line_indices == two_scene_script.dialogue_indices()


def test_script_without_dialogue_finishes(fake_voice):
    script = parse_script("SCENE 1\n(Nothing happens.)\n")
    engine = _engine(script, fake_voice)
    engine.start()
    assert engine.status == FINISHED
    assert engine.state.completed_line_indices == set()


def test_empty_script_finishes(fake_voice):
    engine = _engine(parse_script(""), fake_voice)
    engine.start()
    assert engine.status == FINISHED


def test_restart_after_finish(scene_script, auto_voice):
    engine = _engine(scene_script, auto_voice, users=())
    engine.start()
    assert engine.status == FINISHED
    auto_voice.auto_complete = False
    engine.start()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 2
    assert engine.state.completed_line_indices == set()


def test_unattributed_dialogue_is_partner(fake_voice):
    script = Script(
        title="T",
        raw_text="",
        lines=(
            Line(index=0, text="Once upon a time.", kind=DIALOGUE),
            Line(index=1, text="(Pause.)", kind=STAGE_DIRECTION),
        ),
    )
    engine = _engine(script, fake_voice)
    engine.start()
    assert engine.status == PLAYING_PARTNER
    fake_voice.complete()
    assert engine.status == FINISHED


# --- advance ---

def test_advance_ignored_while_partner_speaks(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    before = engine.state
    engine.advance()
    assert engine.state == before


def test_advance_twice_moves_once(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    fake_voice.complete()
    engine.advance()
    after_first = engine.state
    engine.advance()
    assert engine.state == after_first
    assert len(fake_voice.spoken) == 2


def test_advance_ignored_when_idle(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.advance()
    assert engine.state.status == IDLE
    assert engine.state.completed_line_indices == set()


# --- pause / resume ---

def test_pause_resume_partner_line(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.pause()
    assert engine.status == PAUSED
    assert fake_voice.pauses == 1
    engine.resume()
    assert engine.status == PLAYING_PARTNER
    assert fake_voice.resumes == 1
    assert engine.state.current_line_index == 2


def test_voice_completion_while_paused_advances_on_resume(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.pause()
    fake_voice.complete()
    assert engine.status == PAUSED
    assert engine.state.completed_line_indices == set()
    engine.resume()
    assert engine.status == WAITING_FOR_USER
    assert engine.state.current_line_index == 3
    assert engine.state.completed_line_indices == {2}


def test_pause_resume_user_line(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start(3)
    engine.pause()
    assert engine.status == PAUSED
    assert fake_voice.pauses == 0
    engine.resume()
    assert engine.status == WAITING_FOR_USER


def test_pause_ignored_when_idle_or_finished(scene_script, auto_voice):
    engine = _engine(scene_script, auto_voice, users=())
    engine.pause()
    assert engine.status == IDLE
    engine.start()
    engine.pause()
    assert engine.status == FINISHED


def test_resume_ignored_unless_paused(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.resume()
    assert fake_voice.resumes == 0


def test_advance_ignored_while_paused(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start(3)
    engine.pause()
    engine.advance()
    assert engine.status == PAUSED
    assert engine.state.current_line_index == 3


# --- back / jump / stop ---

def test_back_to_previous_dialogue(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start(3)
    engine.back()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 2
    assert fake_voice.stops == 1


def test_back_from_first_dialogue(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.back()
    # no earlier dialogue: line 0, then forward to the first dialogue line
    assert engine.state.current_line_index == 2
    assert engine.status == PLAYING_PARTNER
    assert len(fake_voice.spoken) == 2


def test_back_after_finish(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice, users=("ALEX",))
    engine.start(4)
    assert engine.status == WAITING_FOR_USER
    engine.advance()
    assert engine.status == FINISHED
    engine.back()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 3


def test_back_from_idle_starts_session(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.back()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.session_started_at is not None


def test_jump(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.jump(4)
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 4
    assert fake_voice.spoken[-1][0] == "Then begin."


def test_jump_from_idle_starts_session(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.jump(3)
    assert engine.status == WAITING_FOR_USER
    assert engine.state.session_started_at is not None


def test_jump_to_non_dialogue_moves_forward(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.jump(1)
    assert engine.state.current_line_index == 2


@pytest.mark.parametrize("index", [-1, 5, 99])
def test_jump_out_of_range_ignored(scene_script, fake_voice, index):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    before = engine.state
    engine.jump(index)
    assert engine.state == before
    assert fake_voice.stops == 0


def test_stop(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    fake_voice.complete()
    engine.stop()
    state = engine.state
    assert state.status == IDLE
    assert state.current_line_index == 0
    assert state.completed_line_indices == {2}
    assert fake_voice.stops == 1


# --- stale callbacks ---

def test_stale_voice_callback_ignored(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    stale = fake_voice.callbacks[0]
    engine.jump(2)
    stale()
    assert engine.status == PLAYING_PARTNER
    assert engine.state.completed_line_indices == set()
    fake_voice.complete()
    assert engine.state.completed_line_indices == {2}


def test_voice_callback_after_stop_ignored(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    engine.stop()
    fake_voice.complete()
    assert engine.status == IDLE
    assert engine.state.completed_line_indices == set()


def test_duplicate_voice_callback_ignored(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    callback = fake_voice.callbacks[0]
    callback()
    callback()
    assert engine.state.current_line_index == 3
    assert engine.state.completed_line_indices == {2}


# --- listening ---

def test_listens_on_user_line(scene_script, fake_voice, fake_speech):
    engine = _engine(scene_script, fake_voice, speech=fake_speech)
    engine.start()
    assert fake_speech.callbacks == []
    fake_voice.complete()
    assert engine.is_listening_for_user
    assert len(fake_speech.callbacks) == 1
    fake_speech.respond("I think so")
    assert engine.status == PLAYING_PARTNER
    assert engine.state.current_line_index == 4
    assert not engine.is_listening_for_user


def test_empty_transcript_still_advances(scene_script, fake_voice, fake_speech):
    engine = _engine(scene_script, fake_voice, speech=fake_speech)
    engine.start(3)
    fake_speech.respond("")
    assert engine.state.completed_line_indices == {3}


def test_manual_advance_stops_listening(scene_script, fake_voice, fake_speech):
    engine = _engine(scene_script, fake_voice, speech=fake_speech)
    engine.start(3)
    engine.advance()
    assert fake_speech.stops >= 1
    assert not engine.is_listening_for_user
    # the late result for line 3 must not complete line 4
    fake_speech.respond("late")
    assert engine.state.current_line_index == 4
    assert 4 not in engine.state.completed_line_indices


def test_permission_denied_waits_for_manual_advance(scene_script, fake_voice):
    speech = FakeSpeech(granted=False)
    engine = _engine(scene_script, fake_voice, speech=speech)
    engine.start(3)
    assert engine.status == WAITING_FOR_USER
    assert speech.callbacks == []
    assert speech.permission_requests == 1
    assert not engine.is_listening_for_user
    engine.advance()
    assert engine.state.current_line_index == 4


def test_listen_failure_waits_for_manual_advance(scene_script, fake_voice, caplog):
    speech = FakeSpeech(fail=True)
    engine = _engine(scene_script, fake_voice, speech=speech)
    engine.start(3)
    assert engine.status == WAITING_FOR_USER
    assert not engine.is_listening_for_user
    assert "Could not start listening" in caplog.text


def test_listen_disabled(scene_script, fake_voice, fake_speech):
    engine = _engine(scene_script, fake_voice, speech=fake_speech, listen_enabled=False)
    engine.start(3)
    assert fake_speech.callbacks == []


def test_toggle_listen_mode(scene_script, fake_voice, fake_speech):
    engine = _engine(scene_script, fake_voice, speech=fake_speech)
    engine.start(3)
    engine.toggle_listen_mode()
    assert not engine.listen_enabled
    assert not engine.is_listening_for_user
    engine.toggle_listen_mode()
    assert engine.listen_enabled
    assert engine.is_listening_for_user
    assert len(fake_speech.callbacks) == 2


def test_pause_stops_listening(scene_script, fake_voice, fake_speech):
    engine = _engine(scene_script, fake_voice, speech=fake_speech)
    engine.start(3)
    engine.pause()
    assert not engine.is_listening_for_user
    fake_speech.respond("ignored")
    assert engine.status == PAUSED
    engine.resume()
    assert engine.is_listening_for_user


# --- tone ---

def test_partner_profile_from_direction(scene_script, fake_voice):
    analysis = ToneAnalysis(scene_tone=["sad"], character_tones={"ALEX": ["angry"]})
    engine = _engine(scene_script, fake_voice, tone_analysis=analysis)
    engine.start()
    _, profile = fake_voice.spoken[0]
    assert profile.rate == TONE_ADJUSTMENTS["angry"].rate


def test_partner_profile_override_voice(scene_script, fake_voice):
    analysis = ToneAnalysis(tts_profiles={"ALEX": {"rate": 0.7}})
    engine = _engine(
        scene_script,
        fake_voice,
        tone_analysis=analysis,
        overrides={"alex": {"voice_id": "en-GB-SoniaNeural"}},
    )
    engine.start()
    _, profile = fake_voice.spoken[0]
    assert profile.voice_id == "en-GB-SoniaNeural"
    assert profile.rate == 0.7


def test_malformed_direction_profile_does_not_break_rehearsal(scene_script, fake_voice):
    analysis = tone_analysis_from_dict({"tts_profile": {"ALEX": {"rate": "fast", "volume": 0.4}}})
    engine = _engine(scene_script, fake_voice, tone_analysis=analysis)
    engine.start()
    assert engine.status == PLAYING_PARTNER
    _, profile = fake_voice.spoken[0]
    assert profile.rate == DEFAULT_PROFILE.rate
    assert profile.volume == 0.4


def test_inject_tone_analysis(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.inject_tone_analysis(ToneAnalysis(scene_tone=["sad"], delivery_notes={2: "Quietly."}))
    engine.start()
    _, profile = fake_voice.spoken[0]
    assert profile.rate == TONE_ADJUSTMENTS["sad"].rate
    assert engine.delivery_note() == "Quietly."


def test_delivery_note_none_without_direction(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    assert engine.delivery_note() is None


# --- configuration / observation ---

def test_set_user_characters(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice, users=())
    engine.set_user_characters(["alex"])
    engine.start()
    assert engine.status == WAITING_FOR_USER
    assert engine.state.user_characters == {"ALEX"}


def test_set_improv_mode(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.set_improv_mode(True)
    assert engine.state.is_improv_mode_on is True


def test_state_is_a_copy(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    state = engine.state
    state.completed_line_indices.add(3)
    state.status = FINISHED
    assert engine.state.completed_line_indices == set()
    assert engine.status == IDLE


def test_subscribe_and_unsubscribe(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    seen = []
    unsubscribe = engine.subscribe(lambda state: seen.append((state.status, state.current_line_index)))
    engine.start()
    fake_voice.complete()
    assert seen == [(PLAYING_PARTNER, 2), (WAITING_FOR_USER, 3)]
    unsubscribe()
    engine.advance()
    assert len(seen) == 2


def test_no_notification_without_change(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    seen = []
    engine.subscribe(seen.append)
    engine.advance()
    engine.resume()
    assert seen == []


def test_current_line(scene_script, fake_voice):
    engine = _engine(scene_script, fake_voice)
    engine.start()
    assert engine.current_line.text == "Are you ready?"
    assert engine.line_count == 5


# --- threading ---

def test_serial_dispatcher_runs_reentrant_calls_after():
    dispatch = SerialDispatcher()
    order = []

    def outer():
        order.append("outer start")
        dispatch(order.append, "inner")
        order.append("outer end")

    dispatch(outer)
    assert order == ["outer start", "outer end", "inner"]


def test_threaded_voice_completes_rehearsal(scene_script):
    engine = _engine(scene_script, EstimatedVoiceOutput(time_scale=0.0), users=())
    done = threading.Event()
    engine.subscribe(lambda state: state.status == FINISHED and done.set())
    engine.start()
    assert done.wait(5)
    assert engine.state.completed_line_indices == {2, 3, 4}
