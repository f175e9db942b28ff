"""Phase execution with checkpoints, restore-on-failure and resume (internal).

One coordinating thread walks the phases in order. Within a batch, files are
rewritten concurrently on a thread pool; the batch is a barrier (every
future resolved before the next batch starts) and so is the phase. All
progress bookkeeping happens on the coordinating thread through the pure
transitions in ``jakartashift.kernel.progress``; the store is the only
writer.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from jakartashift._internal.io.checkpoint_store import CheckpointStore
from jakartashift._internal.rewrite import Rewriter
from jakartashift.codes import ExecutionOutcome, FileStatus, MigrationStatus
from jakartashift.exceptions import CheckpointStoreError, InvalidTransitionError, PlanMismatchError, RewriteError
from jakartashift.kernel import progress as transitions
from jakartashift.kernel.plan import LAST_PHASE_NUMBER, MigrationPlan
from jakartashift.kernel.progress import Checkpoint, MigrationState, ProgressRecord

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CancellationToken:
    """Cooperative cancellation, checked between phases only."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class FileResult(BaseModel):
    file: str
    phase: int
    status: FileStatus
    error: Optional[str] = None


class ExecutionResult(BaseModel):
    outcome: ExecutionOutcome
    state: MigrationState
    per_file: List[FileResult] = Field(default_factory=list)
    phases_completed: List[int] = Field(default_factory=list)
    progress: Optional[ProgressRecord] = None
    message: str = ""


class PhaseExecutor:
    def __init__(
        self,
        store: CheckpointStore,
        project_root: Path,
        rewriter: Rewriter,
        max_workers: int = 4,
        clock: Callable[[], str] = utc_now,
    ):
        self.store = store
        self.project_root = Path(project_root).resolve()
        self.rewriter = rewriter
        self.max_workers = max(1, max_workers)
        self.clock = clock

    # Execution

    def run(self, plan: MigrationPlan, phase_range: Tuple[int, int] = (1, LAST_PHASE_NUMBER),
            cancel: Optional[CancellationToken] = None) -> ExecutionResult:
        """Execute the phases of plan in phase_range.

        Resumes an in-progress record: files that already succeeded or were
        skipped are not re-run. Stops with outcome ``blocked`` when a phase
        still has failed or pending files after its batches ran.
        """
        start, end = phase_range
        if not 1 <= start <= end <= LAST_PHASE_NUMBER:
            raise ValueError(f"phase range must lie within 1..{LAST_PHASE_NUMBER}, got {phase_range}")

        try:
            record = self.store.load_or_new(plan.fingerprint)
        except CheckpointStoreError as e:
            logger.error("Progress record unusable: %s", e)
            return ExecutionResult(
                outcome=ExecutionOutcome.FAILED,
                state=MigrationState(status=MigrationStatus.FAILED),
                message=str(e),
            )

        record = self._accept_plan(record, plan)
        first = self._next_phase(record)
        if start > first:
            raise InvalidTransitionError(
                record.state.label, f"in-progress-phase-{start}", f"phase {first} has not completed yet"
            )

        per_file: List[FileResult] = []
        completed: List[int] = []
        outcome = ExecutionOutcome.COMPLETED
        message = ""
        try:
            for number in range(first, end + 1):
                if cancel is not None and cancel.cancelled:
                    outcome = ExecutionOutcome.CANCELLED
                    message = f"cancelled before phase {number}"
                    logger.info("Execution cancelled before phase %d", number)
                    break
                record = self._run_phase(record, plan, number, per_file)
                if record.state.status == MigrationStatus.PHASE_COMPLETE:
                    completed.append(number)
                    continue
                outcome = ExecutionOutcome.BLOCKED
                failed = [f for f in record.files_in_phase(number) if record.file_status[f] == FileStatus.FAILED]
                message = f"phase {number} has {len(failed)} failed file(s); skip or fix them to continue"
                logger.warning("Phase %d blocked by %d failed file(s)", number, len(failed))
                break
        except CheckpointStoreError as e:
            logger.error("Checkpoint store failure during execution: %s", e)
            record = self._record_failure(record, str(e))
            return ExecutionResult(
                outcome=ExecutionOutcome.FAILED,
                state=MigrationState(status=MigrationStatus.FAILED, phase=record.state.phase),
                per_file=per_file,
                phases_completed=completed,
                progress=record,
                message=str(e),
            )

        return ExecutionResult(
            outcome=outcome,
            state=record.state,
            per_file=per_file,
            phases_completed=completed,
            progress=record,
            message=message,
        )

    def _record_failure(self, record: ProgressRecord, reason: str) -> ProgressRecord:
        """Persist the failed state; the store may itself be broken, so this is best effort."""
        try:
            current = self.store.load() or record
            failed = transitions.fail(current, reason, self.clock())
            self.store.save(failed)
        except (CheckpointStoreError, InvalidTransitionError) as e:
            logger.error("Cannot record the failure in the progress record: %s", e)
            return record
        return failed

    def _accept_plan(self, record: ProgressRecord, plan: MigrationPlan) -> ProgressRecord:
        status = record.state.status
        if status in (MigrationStatus.FAILED, MigrationStatus.VERIFIED, MigrationStatus.COMPLETE):
            raise InvalidTransitionError(record.state.label, "execute")
        if record.plan_fingerprint and record.plan_fingerprint != plan.fingerprint:
            if status == MigrationStatus.IN_PROGRESS:
                raise PlanMismatchError(record.plan_fingerprint, plan.fingerprint)
            logger.info("Adopting recomputed plan %s at %s", plan.fingerprint[:12], record.state.label)
        return record.model_copy(update={"plan_fingerprint": plan.fingerprint})

    @staticmethod
    def _next_phase(record: ProgressRecord) -> int:
        state = record.state
        if state.status == MigrationStatus.NOT_STARTED:
            return 1
        if state.status == MigrationStatus.IN_PROGRESS:
            return state.phase
        return state.phase + 1

    def _run_phase(self, record: ProgressRecord, plan: MigrationPlan, number: int,
                   per_file: List[FileResult]) -> ProgressRecord:
        phase = plan.phase(number)
        record = transitions.begin_phase(record, number, self.clock())
        record = transitions.register_files(record, number, phase.files)
        self.store.save(record)
        logger.info("Phase %d: %d file(s) in %d batch(es), risk %s",
                    number, len(phase.files), len(phase.batches), phase.risk.value)

        for batch in phase.batches:
            todo = [f for f in batch if record.file_status.get(f) not in (FileStatus.SUCCEEDED, FileStatus.SKIPPED)]
            if not todo:
                continue
            record, results = self._run_batch(record, plan, number, todo)
            per_file.extend(results)
            self.store.save(record)

        if record.phase_settled(number):
            record = transitions.complete_phase(record, self.clock())
            self.store.save(record)
        return record

    def _run_batch(self, record: ProgressRecord, plan: MigrationPlan, number: int,
                   files: List[str]) -> Tuple[ProgressRecord, List[FileResult]]:
        # Checkpoints are persisted before any file of the batch is touched.
        ready: List[str] = []
        results: Dict[str, FileResult] = {}
        for file in files:
            path = self.project_root / file
            earlier = record.checkpoints.get(file)
            try:
                if earlier is not None:
                    # interrupted run: start again from the pre-transformation bytes
                    self.store.restore(earlier.snapshot_id, path)
                snapshot_id = self.store.snapshot(path)
            except OSError as e:
                record = transitions.record_file(record, file, FileStatus.FAILED, error=str(e))
                results[file] = FileResult(file=file, phase=number, status=FileStatus.FAILED, error=str(e))
                logger.warning("Cannot snapshot %s: %s", file, e)
                continue
            checkpoint = Checkpoint(file=file, phase=number, snapshot_id=snapshot_id, timestamp=self.clock())
            record = transitions.record_file(record, file, FileStatus.PENDING, checkpoint=checkpoint)
            ready.append(file)
        self.store.save(record)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            outcomes = list(pool.map(lambda f: self._transform(f, plan, record.checkpoints[f]), ready))

        for file, error in outcomes:
            if error is None:
                record = transitions.record_file(record, file, FileStatus.SUCCEEDED)
                results[file] = FileResult(file=file, phase=number, status=FileStatus.SUCCEEDED)
            else:
                record = transitions.drop_checkpoint(record, file)
                record = transitions.record_file(record, file, FileStatus.FAILED, error=error)
                results[file] = FileResult(file=file, phase=number, status=FileStatus.FAILED, error=error)
        return record, [results[f] for f in files]

    def _transform(self, file: str, plan: MigrationPlan, checkpoint: Checkpoint) -> Tuple[str, Optional[str]]:
        """Rewrite one file; on failure restore it and return the error text.

        Rewriters are pluggable, so any exception they raise is a failure of
        this file only.
        """
        path = self.project_root / file
        try:
            self.rewriter(path, plan.actions_for(file))
        except (RewriteError, OSError) as e:
            logger.warning("Rewrite failed for %s: %s", file, e)
            self.store.restore(checkpoint.snapshot_id, path)
            return file, str(e)
        except Exception as e:
            logger.warning("Rewriter raised %s for %s: %s", type(e).__name__, file, e)
            self.store.restore(checkpoint.snapshot_id, path)
            return file, f"{type(e).__name__}: {e}"
        logger.debug("Rewrote %s", file)
        return file, None

    # Operator actions

    def skip(self, files: Iterable[str]) -> ProgressRecord:
        files = list(files)
        record = self.store.update(lambda r: transitions.skip_files(r, files))
        logger.info("Skipped %d file(s)", len(files))
        return record

    def rollback(self, to_phase: int) -> ProgressRecord:
        """Restore every file checkpointed in phases >= to_phase, then move to in-progress(to_phase)."""
        record = self.store.load()
        if record is None:
            raise InvalidTransitionError("not-started", "rollback", "nothing has been executed")
        for checkpoint in transitions.rollback_targets(record, to_phase):
            self.store.restore(checkpoint.snapshot_id, self.project_root / checkpoint.file)
        record = transitions.rollback(record, to_phase, self.clock())
        self.store.save(record)
        logger.info("Rolled back to phase %d", to_phase)
        return record

    def rollback_file(self, file: str) -> ProgressRecord:
        record = self.store.load()
        if record is None:
            raise InvalidTransitionError("not-started", "rollback-file", "nothing has been executed")
        checkpoint = transitions.rollback_file(record, file)
        self.store.restore(checkpoint.snapshot_id, self.project_root / file)
        record = transitions.reset_file(record, file)
        self.store.save(record)
        logger.info("Rolled back %s", file)
        return record

    def mark_verified(self) -> ProgressRecord:
        return self.store.update(lambda r: transitions.mark_verified(r, self.clock()))

    def finalize(self) -> ProgressRecord:
        """verified -> complete; checkpoints and snapshots are released."""
        record = self.store.update(lambda r: transitions.mark_complete(r, self.clock()))
        self.store.prune_snapshots()
        return record

    def fail(self, reason: str) -> ProgressRecord:
        return self.store.update(lambda r: transitions.fail(r, reason, self.clock()))
