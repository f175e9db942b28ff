"""Migration progress: state machine and per-file bookkeeping.

Every transition is a pure function returning a new value; nothing here
touches the filesystem or the clock. Timestamps are passed in by the caller.

Lifecycle::

    not-started -> in-progress(1) -> phase-complete(1) -> in-progress(2) -> ...
        -> phase-complete(4) -> verified -> complete

``failed`` is reachable from in-progress and phase-complete. ``rollback``
moves in-progress(N) or phase-complete(N) back to in-progress(M), M <= N.
"""

from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from jakartashift.codes import FileStatus, MigrationStatus
from jakartashift.exceptions import InvalidTransitionError


PROGRESS_SCHEMA_VERSION = 1
LAST_PHASE = 4


class MigrationState(BaseModel):
    status: MigrationStatus = MigrationStatus.NOT_STARTED
    phase: int = 0  # 0 when the status is not phase-scoped

    model_config = ConfigDict(frozen=True)

    @property
    def label(self) -> str:
        if self.status == MigrationStatus.IN_PROGRESS:
            return f"in-progress-phase-{self.phase}"
        if self.status == MigrationStatus.PHASE_COMPLETE:
            return f"phase-{self.phase}-complete"
        return self.status.value


class Checkpoint(BaseModel):
    """A restore point for one file, taken before it is transformed."""
    file: str
    phase: int
    snapshot_id: str  # sha256 of the pre-transformation bytes
    timestamp: str  # ISO 8601

    model_config = ConfigDict(frozen=True)


class HistoryEntry(BaseModel):
    from_state: str
    to_state: str
    timestamp: str
    note: str = ""


class ProgressRecord(BaseModel):
    """Persisted progress for one project path."""
    schema_version: int = PROGRESS_SCHEMA_VERSION
    project_path: str
    plan_fingerprint: str = ""
    state: MigrationState = Field(default_factory=MigrationState)
    file_status: Dict[str, FileStatus] = Field(default_factory=dict)
    file_phase: Dict[str, int] = Field(default_factory=dict)
    file_errors: Dict[str, str] = Field(default_factory=dict)
    checkpoints: Dict[str, Checkpoint] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def files_failed(self) -> List[str]:
        return sorted(f for f, s in self.file_status.items() if s == FileStatus.FAILED)

    def files_in_phase(self, phase: int) -> List[str]:
        return sorted(f for f, p in self.file_phase.items() if p == phase)

    def phase_settled(self, phase: int) -> bool:
        """True when every file of the phase succeeded or was skipped."""
        return all(
            self.file_status.get(f) in (FileStatus.SUCCEEDED, FileStatus.SKIPPED)
            for f in self.files_in_phase(phase)
        )


def _transition(record: ProgressRecord, state: MigrationState, timestamp: str, note: str = "",
                **updates) -> ProgressRecord:
    history = list(record.history)
    history.append(HistoryEntry(
        from_state=record.state.label, to_state=state.label, timestamp=timestamp, note=note,
    ))
    return record.model_copy(update={"state": state, "history": history, **updates})


def _require(record: ProgressRecord, allowed: Iterable[MigrationStatus], attempted: str, detail: str = "") -> None:
    if record.state.status not in set(allowed):
        raise InvalidTransitionError(record.state.label, attempted, detail)


def new_record(project_path: str, plan_fingerprint: str = "") -> ProgressRecord:
    return ProgressRecord(project_path=project_path, plan_fingerprint=plan_fingerprint)


def register_files(record: ProgressRecord, phase: int, files: Iterable[str]) -> ProgressRecord:
    """Track the files of a phase; files already tracked keep their status."""
    status = dict(record.file_status)
    phases = dict(record.file_phase)
    for f in files:
        status.setdefault(f, FileStatus.PENDING)
        phases[f] = phase
    return record.model_copy(update={"file_status": status, "file_phase": phases})


def begin_phase(record: ProgressRecord, phase: int, timestamp: str) -> ProgressRecord:
    """Enter in-progress(phase).

    Allowed from not-started (phase 1), from phase-complete(phase - 1), and
    as a no-op resume when already in-progress(phase).
    """
    state = record.state
    if state.status == MigrationStatus.IN_PROGRESS and state.phase == phase:
        return record
    target = MigrationState(status=MigrationStatus.IN_PROGRESS, phase=phase)
    if state.status == MigrationStatus.NOT_STARTED and phase == 1:
        return _transition(record, target, timestamp)
    if state.status == MigrationStatus.PHASE_COMPLETE and phase == state.phase + 1 and phase <= LAST_PHASE:
        return _transition(record, target, timestamp)
    raise InvalidTransitionError(state.label, target.label, "phases run in order")


def complete_phase(record: ProgressRecord, timestamp: str) -> ProgressRecord:
    """in-progress(N) -> phase-complete(N); every file must be succeeded or skipped."""
    _require(record, [MigrationStatus.IN_PROGRESS], "phase-complete")
    phase = record.state.phase
    if not record.phase_settled(phase):
        unsettled = [
            f for f in record.files_in_phase(phase)
            if record.file_status.get(f) not in (FileStatus.SUCCEEDED, FileStatus.SKIPPED)
        ]
        raise InvalidTransitionError(
            record.state.label, f"phase-{phase}-complete",
            f"{len(unsettled)} file(s) not succeeded or skipped: {', '.join(unsettled[:5])}",
        )
    return _transition(record, MigrationState(status=MigrationStatus.PHASE_COMPLETE, phase=phase), timestamp)


def mark_verified(record: ProgressRecord, timestamp: str) -> ProgressRecord:
    if not (record.state.status == MigrationStatus.PHASE_COMPLETE and record.state.phase == LAST_PHASE):
        raise InvalidTransitionError(record.state.label, "verified", f"requires phase-{LAST_PHASE}-complete")
    return _transition(record, MigrationState(status=MigrationStatus.VERIFIED), timestamp)


def mark_complete(record: ProgressRecord, timestamp: str) -> ProgressRecord:
    _require(record, [MigrationStatus.VERIFIED], "complete")
    return _transition(record, MigrationState(status=MigrationStatus.COMPLETE), timestamp, checkpoints={})


def fail(record: ProgressRecord, reason: str, timestamp: str) -> ProgressRecord:
    _require(record, [MigrationStatus.IN_PROGRESS, MigrationStatus.PHASE_COMPLETE], "failed")
    return _transition(
        record, MigrationState(status=MigrationStatus.FAILED, phase=record.state.phase), timestamp,
        note=reason, failure_reason=reason,
    )


def record_file(record: ProgressRecord, file: str, status: FileStatus,
                checkpoint: Optional[Checkpoint] = None, error: Optional[str] = None) -> ProgressRecord:
    """Set one file's status; a checkpoint, when given, replaces any earlier one."""
    statuses = dict(record.file_status)
    statuses[file] = status
    checkpoints = dict(record.checkpoints)
    if checkpoint is not None:
        checkpoints[file] = checkpoint
    errors = dict(record.file_errors)
    if error is None:
        errors.pop(file, None)
    else:
        errors[file] = error
    return record.model_copy(update={"file_status": statuses, "checkpoints": checkpoints, "file_errors": errors})


def drop_checkpoint(record: ProgressRecord, file: str) -> ProgressRecord:
    checkpoints = dict(record.checkpoints)
    checkpoints.pop(file, None)
    return record.model_copy(update={"checkpoints": checkpoints})


def skip_files(record: ProgressRecord, files: Iterable[str]) -> ProgressRecord:
    """Operator acknowledgement: pending or failed files become skipped."""
    statuses = dict(record.file_status)
    for f in files:
        current = statuses.get(f)
        if current is None:
            raise InvalidTransitionError(record.state.label, "skip", f"file not tracked: {f}")
        if current in (FileStatus.PENDING, FileStatus.FAILED):
            statuses[f] = FileStatus.SKIPPED
    return record.model_copy(update={"file_status": statuses})


def rollback_targets(record: ProgressRecord, to_phase: int) -> List[Checkpoint]:
    """Checkpoints a rollback to in-progress(to_phase) must restore, by path."""
    _require(record, [MigrationStatus.IN_PROGRESS, MigrationStatus.PHASE_COMPLETE], "rollback")
    if not 1 <= to_phase <= record.state.phase:
        raise InvalidTransitionError(
            record.state.label, f"in-progress-phase-{to_phase}",
            f"rollback target must be between 1 and {record.state.phase}",
        )
    return [record.checkpoints[f] for f in sorted(record.checkpoints) if record.checkpoints[f].phase >= to_phase]


def rollback(record: ProgressRecord, to_phase: int, timestamp: str) -> ProgressRecord:
    """Move to in-progress(to_phase) and reset every file of phases >= to_phase.

    The caller restores the files named by ``rollback_targets`` first.
    """
    rollback_targets(record, to_phase)
    statuses = dict(record.file_status)
    errors = dict(record.file_errors)
    for f, phase in record.file_phase.items():
        if phase >= to_phase:
            statuses[f] = FileStatus.PENDING
            errors.pop(f, None)
    checkpoints = {f: c for f, c in record.checkpoints.items() if c.phase < to_phase}
    return _transition(
        record, MigrationState(status=MigrationStatus.IN_PROGRESS, phase=to_phase), timestamp,
        note=f"rollback to phase {to_phase}",
        file_status=statuses, file_errors=errors, checkpoints=checkpoints,
    )


def rollback_file(record: ProgressRecord, file: str) -> Checkpoint:
    """Checkpoint for undoing one file of the current in-progress phase."""
    _require(record, [MigrationStatus.IN_PROGRESS], "rollback-file")
    checkpoint = record.checkpoints.get(file)
    if checkpoint is None:
        raise InvalidTransitionError(record.state.label, "rollback-file", f"no checkpoint for {file}")
    if checkpoint.phase != record.state.phase:
        raise InvalidTransitionError(
            record.state.label, "rollback-file",
            f"{file} belongs to phase {checkpoint.phase}; roll back the phase instead",
        )
    return checkpoint


def reset_file(record: ProgressRecord, file: str) -> ProgressRecord:
    record = drop_checkpoint(record, file)
    return record_file(record, file, FileStatus.PENDING)
