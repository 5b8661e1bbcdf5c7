"""
Job Stage Tracker
═════════════════

Stage progression, persisted in processing_jobs.metadata:

    registered → uploaded → processing → extracted → indexed → injected
         │           │           │           │          │
         └───────────┴───────────┴───────────┴──────────┴──► failed (terminal)

Rules:
  - Forward jumps are allowed (a collaborator may skip "uploaded").
  - Backward moves are recorded but logged as warnings.
  - Nothing leaves "failed" — StageTransitionError.
  - Re-entering the current stage refreshes job_stage_updated_at but does
    not append a history entry.
  - History keeps the most recent HISTORY_CAP entries.

JSON shape (kept stable for other readers of the metadata column):

    {
      "job_stage": "extracted",
      "job_stage_history": [{"stage": "registered", "at": "2024-05-01T10:00:00.000Z"}, ...],
      "job_stage_updated_at": "2024-05-01T10:00:42.000Z",
      ...anything else callers stored
    }

All functions are pure: they return a new metadata dict and never mutate
their input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from app.core.errors import StageTransitionError

logger = logging.getLogger(__name__)

HISTORY_CAP = 25


class JobStage(str, Enum):
    REGISTERED = "registered"
    UPLOADED   = "uploaded"
    PROCESSING = "processing"
    EXTRACTED  = "extracted"
    INDEXED    = "indexed"
    INJECTED   = "injected"
    FAILED     = "failed"


_PROGRESSION: tuple[JobStage, ...] = (
    JobStage.REGISTERED,
    JobStage.UPLOADED,
    JobStage.PROCESSING,
    JobStage.EXTRACTED,
    JobStage.INDEXED,
    JobStage.INJECTED,
)

# Every stage may move to any later stage or to failed; failed goes nowhere.
STAGE_TRANSITIONS: dict[JobStage, frozenset[JobStage]] = {
    stage: frozenset(_PROGRESSION[i + 1:]) | {JobStage.FAILED}
    for i, stage in enumerate(_PROGRESSION)
}
STAGE_TRANSITIONS[JobStage.FAILED] = frozenset()


@dataclass(frozen=True)
class StageEntry:
    stage: JobStage
    at:    str

    def to_dict(self) -> dict[str, str]:
        return {"stage": self.stage.value, "at": self.at}


@dataclass
class StageState:
    stage:      JobStage | None
    history:    list[StageEntry] = field(default_factory=list)
    updated_at: str | None = None

    @property
    def is_failed(self) -> bool:
        return self.stage is JobStage.FAILED


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def isoformat(moment: datetime | None = None) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def coerce_stage(value: Any) -> JobStage | None:
    if isinstance(value, JobStage):
        return value
    try:
        return JobStage(value)
    except ValueError:
        return None


def parse_stage_history(metadata: dict | None) -> list[StageEntry]:
    """
    History entries with a known stage and a string timestamp; the rest are dropped.

    Adjacent entries for the same stage collapse into the first of the run,
    and only the most recent HISTORY_CAP entries are kept.
    """
    raw = (metadata or {}).get("job_stage_history")
    if not isinstance(raw, list):
        return []

    entries: list[StageEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        stage = coerce_stage(item.get("stage"))
        at = item.get("at")
        if stage is None or not isinstance(at, str):
            continue
        if entries and entries[-1].stage is stage:
            continue
        entries.append(StageEntry(stage=stage, at=at))
    return entries[-HISTORY_CAP:]


def parse_stage_state(metadata: dict | None) -> StageState:
    metadata = metadata or {}
    updated_at = metadata.get("job_stage_updated_at")
    return StageState(
        stage=coerce_stage(metadata.get("job_stage")),
        history=parse_stage_history(metadata),
        updated_at=updated_at if isinstance(updated_at, str) else None,
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def check_transition(current: JobStage | None, target: JobStage) -> None:
    """
    Raise StageTransitionError for moves out of failed; warn on backward moves.
    """
    if current is None or current is target:
        return
    if current is JobStage.FAILED:
        raise StageTransitionError(
            f"Job is failed; cannot move to stage {target.value!r}"
        )
    if target not in STAGE_TRANSITIONS[current]:
        logger.warning(
            "Stage moved backwards | from=%s to=%s", current.value, target.value,
        )


def advance(
    metadata: dict | None,
    stage:    JobStage | str,
    extra:    dict[str, Any] | None = None,
    now:      datetime | None = None,
) -> dict[str, Any]:
    """
    Return a copy of `metadata` with `stage` recorded.

    Raises:
        ValueError: unknown stage name
        StageTransitionError: the job is already failed
    """
    target = stage if isinstance(stage, JobStage) else JobStage(stage)
    base = dict(metadata or {})
    state = parse_stage_state(base)
    check_transition(state.stage, target)

    timestamp = isoformat(now)
    history = state.history
    if not history or history[-1].stage is not target:
        history = [*history, StageEntry(stage=target, at=timestamp)]
    history = history[-HISTORY_CAP:]

    return {
        **base,
        **(extra or {}),
        "job_stage":            target.value,
        "job_stage_history":    [entry.to_dict() for entry in history],
        "job_stage_updated_at": timestamp,
    }


def fail(
    metadata: dict | None,
    error:    str,
    now:      datetime | None = None,
) -> dict[str, Any]:
    """Move to failed, recording the error message and failure time."""
    timestamp = isoformat(now)
    return advance(
        metadata,
        JobStage.FAILED,
        extra={"error": error, "failed_at": timestamp},
        now=now,
    )
