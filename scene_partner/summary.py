"""Session summary: which lines of a rehearsal were actually run."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from scene_partner.models import RehearsalState, Script


@dataclass
class SceneProgress:
    index: int
    heading: str
    completed: int
    total: int


@dataclass
class SessionSummary:
    script_title: str
    user_characters: list[str]
    started_at: datetime | None
    finished_at: datetime
    dialogue_total: int
    completed_total: int
    user_lines_completed: int
    partner_lines_completed: int
    scenes: list[SceneProgress] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def completion_ratio(self) -> float:
        if not self.dialogue_total:
            return 0.0
        return self.completed_total / self.dialogue_total

    @property
    def is_complete(self) -> bool:
        return self.dialogue_total > 0 and self.completed_total == self.dialogue_total


def summarize(script: Script, state: RehearsalState, finished_at: datetime | None = None) -> SessionSummary:
    """Count completed dialogue lines overall, per side and per scene.

    Non-dialogue indices in the completed set are ignored.
    """
    if finished_at is None:
        finished_at = datetime.now(timezone.utc)

    dialogue = {line.index: line for line in script.lines if line.is_dialogue}
    completed = {i for i in state.completed_line_indices if i in dialogue}
    users = {name.upper() for name in state.user_characters}

    user_done = sum(
        1 for i in completed
        if dialogue[i].speaker and dialogue[i].speaker.upper() in users
    )

    scenes = []
    for scene in script.scenes:
        members = [i for i in scene.line_indices if i in dialogue]
        scenes.append(SceneProgress(
            index=scene.index,
            heading=scene.heading,
            completed=sum(1 for i in members if i in completed),
            total=len(members),
        ))

    return SessionSummary(
        script_title=script.title,
        user_characters=sorted(users),
        started_at=state.session_started_at,
        finished_at=finished_at,
        dialogue_total=len(dialogue),
        completed_total=len(completed),
        user_lines_completed=user_done,
        partner_lines_completed=len(completed) - user_done,
        scenes=scenes,
    )


def summary_to_dict(summary: SessionSummary) -> dict:
    return {
        "script_title": summary.script_title,
        "user_characters": summary.user_characters,
        "started_at": summary.started_at.isoformat() if summary.started_at else None,
        "finished_at": summary.finished_at.isoformat(),
        "duration_seconds": summary.duration_seconds,
        "dialogue_total": summary.dialogue_total,
        "completed_total": summary.completed_total,
        "user_lines_completed": summary.user_lines_completed,
        "partner_lines_completed": summary.partner_lines_completed,
        "completion_ratio": round(summary.completion_ratio, 3),
        "is_complete": summary.is_complete,
        "scenes": [
            {"index": s.index, "heading": s.heading, "completed": s.completed, "total": s.total}
            for s in summary.scenes
        ],
    }
