"""All magic numbers and configuration constants."""

# Line kinds
DIALOGUE = "dialogue"
STAGE_DIRECTION = "stage_direction"
SCENE_HEADING = "scene_heading"

# Rehearsal status values
IDLE = "idle"
PLAYING_PARTNER = "playing_partner"
WAITING_FOR_USER = "waiting_for_user"
PAUSED = "paused"
FINISHED = "finished"

NARRATOR_NAME = "NARRATOR"                   # identity for dialogue lines with no speaker
UNTITLED_SCRIPT = "Untitled Script"
SYNTHETIC_SCENE_HEADING = "Scene 1"
SCENE_HEADING_PREFIXES = ("SCENE ", "INT.", "EXT.", "INT/EXT", "ACT ")
CHARACTER_NAME_MAX_WORDS = 5

DEFAULT_RATE = 0.50                          # 0.0–1.0, 0.5 = natural pace
DEFAULT_PITCH = 1.0                          # 0.5–2.0 multiplier
DEFAULT_VOLUME = 1.0                         # 0.0–1.0
DEFAULT_POST_PAUSE_MS = 300                  # ms of silence after each partner line

LISTEN_NO_SPEECH_SECONDS = 8.0               # give up if the user never speaks
LISTEN_MAX_SECONDS = 60.0                    # hard cap on one listen, speech or not
LISTEN_SILENCE_SECONDS = 1.5                 # cutoff once speech has been heard
VAD_RMS_THRESHOLD = 0.02                     # mic level (float samples) counted as speech
VAD_SAMPLE_RATE = 16000
VAD_BLOCK_SIZE = 1024

TTS_RETRY_COUNT = 3                          # max retries per synthesized line
TTS_RETRY_BASE_DELAY = 1.0                   # seconds, base delay for exponential backoff
FALLBACK_WORDS_PER_MINUTE = 150              # offline voice pacing at rate 0.5
PLAYBACK_BLOCK_MS = 50                       # playback granularity for pause/stop
NARRATOR_VOICE = "en-US-RogerNeural"         # voice for unattributed partner lines
ROOM_REVERB_SIZE = 0.2                       # partner voice room reverb (0.0–1.0)
ROOM_REVERB_WET_LEVEL = 0.08                 # partner voice reverb dry/wet mix
TARGET_DBFS = -20.0

SCRIPTS_DIR = "scripts"
SESSIONS_SUBDIR = "sessions"
SETTINGS_FILE = "settings.json"
TONE_SIDECAR_SUFFIX = ".tone.json"
CAST_SIDECAR_SUFFIX = ".cast.json"
VERSION = "0.1.0"
