"""Tests for checkpointed phase execution, resume, skip and rollback."""

import sys

import pytest

from conftest import FakeRewriter, java, pom
from jakartashift import api
from jakartashift._internal.executor import CancellationToken
from jakartashift._internal.io.checkpoint_store import CheckpointStore
from jakartashift._internal.rewrite import CommandRewriter
from jakartashift.codes import ExecutionOutcome, FileStatus, MigrationStatus
from jakartashift.exceptions import CheckpointStoreError, InvalidTransitionError, PlanMismatchError


SRC = "src/main/java/com/acme"


def _five_sources():
    files = {"pom.xml": pom("com.acme", "app", "1.0", [("legacy-lib", "legacy-lib-api", "4.0.1")])}
    for i in range(5):
        files[f"{SRC}/F{i}.java"] = java("com.acme", f"F{i}", ["javax.widget.Button"])
    return files


def _layered():
    """One file per phase shape: manifest, leaf sources, a dependent source, config."""
    files = _five_sources()
    files[f"{SRC}/G.java"] = java("com.acme", "G", ["javax.widget.Button"], "    F0 f;")
    files[f"{SRC}/H.java"] = java("com.acme", "H", ["javax.widget.Panel"], "    G g;")
    files["src/main/webapp/WEB-INF/web.xml"] = (
        "<web-app>\n  <filter-class>javax.widget.Filter</filter-class>\n</web-app>\n"
    )
    return files


def _snapshot(root):
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


@pytest.fixture
def five(make_project, small_kb, settings):
    root = make_project(_five_sources())
    migration_plan = api.plan(root, knowledge_base=small_kb, settings=settings)
    return root, migration_plan


def test_phase_layout(five):
    _, migration_plan = five
    assert migration_plan.phase(1).files == ["pom.xml"]
    assert migration_plan.phase(2).files == [f"{SRC}/F{i}.java" for i in range(5)]


def test_partial_failure_blocks_then_skip_advances(five, settings):
    """3 of 5 files succeed: still in progress, exactly the 2 failures recorded."""
    root, migration_plan = five
    original = (root / SRC / "F3.java").read_text(encoding="utf-8")

    result = api.execute(root, migration_plan, rewriter=FakeRewriter(fail={"F3.java", "F4.java"}), settings=settings)

    assert result.outcome == ExecutionOutcome.BLOCKED
    assert result.state.status == MigrationStatus.IN_PROGRESS
    assert result.state.phase == 2
    assert result.phases_completed == [1]
    assert result.progress.files_failed == [f"{SRC}/F3.java", f"{SRC}/F4.java"]
    # Failed files are restored from their checkpoint
    assert (root / SRC / "F3.java").read_text(encoding="utf-8") == original
    assert "import jakarta.widget.Button;" in (root / SRC / "F0.java").read_text(encoding="utf-8")
    pom_text = (root / "pom.xml").read_text(encoding="utf-8")
    assert "<artifactId>successor-lib-api</artifactId>" in pom_text
    assert "<version>6.0.0</version>" in pom_text

    # Re-running without resolving anything stays blocked
    again = api.execute(root, migration_plan, rewriter=FakeRewriter(fail={"F3.java", "F4.java"}), settings=settings)
    assert again.outcome == ExecutionOutcome.BLOCKED

    record = api.skip(root, [f"{SRC}/F3.java", f"{SRC}/F4.java"], settings=settings)
    assert record.file_status[f"{SRC}/F3.java"] == FileStatus.SKIPPED

    final = api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)
    assert final.outcome == ExecutionOutcome.COMPLETED
    assert final.state.label == "phase-4-complete"
    assert final.phases_completed == [2, 3, 4]


def test_resume_reruns_only_unfinished_files(five, settings):
    root, migration_plan = five
    api.execute(root, migration_plan, rewriter=FakeRewriter(fail={"F3.java"}), settings=settings)

    rewriter = FakeRewriter()
    result = api.execute(root, migration_plan, rewriter=rewriter, settings=settings)

    assert rewriter.calls == ["F3.java"]
    assert result.outcome == ExecutionOutcome.COMPLETED
    assert "import jakarta.widget.Button;" in (root / SRC / "F3.java").read_text(encoding="utf-8")


@pytest.mark.parametrize("to_phase", [1, 2, 3, 4])
def test_rollback_restores_phases_from_target(make_project, small_kb, settings, to_phase):
    root = make_project(_layered())
    migration_plan = api.plan(root, knowledge_base=small_kb, settings=settings)
    assert migration_plan.phase(3).files == [f"{SRC}/H.java"]
    assert migration_plan.phase(4).files == ["src/main/webapp/WEB-INF/web.xml"]
    before = _snapshot(root)

    result = api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)
    assert result.outcome == ExecutionOutcome.COMPLETED
    migrated = _snapshot(root)
    assert migrated != before

    record = api.rollback(root, to_phase, settings=settings)

    assert record.state.label == f"in-progress-phase-{to_phase}"
    after = _snapshot(root)
    for path in before:
        phase = migration_plan.phase_of(path)
        if phase is not None and phase >= to_phase:
            assert after[path] == before[path], path
        else:
            assert after[path] == migrated[path], path
    if to_phase == 1:
        assert after == before
        assert record.checkpoints == {}


def test_execute_after_full_rollback_migrates_again(make_project, small_kb, settings):
    root = make_project(_layered())
    migration_plan = api.plan(root, knowledge_base=small_kb, settings=settings)
    api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)
    migrated = _snapshot(root)

    api.rollback(root, 1, settings=settings)
    result = api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)

    assert result.outcome == ExecutionOutcome.COMPLETED
    assert _snapshot(root) == migrated


def test_rollback_single_file(five, settings):
    root, migration_plan = five
    original = (root / SRC / "F0.java").read_bytes()
    api.execute(root, migration_plan, rewriter=FakeRewriter(fail={"F4.java"}), settings=settings)

    record = api.rollback(root, file=f"{SRC}/F0.java", settings=settings)

    assert (root / SRC / "F0.java").read_bytes() == original
    assert record.file_status[f"{SRC}/F0.java"] == FileStatus.PENDING
    assert record.state.label == "in-progress-phase-2"


def test_plan_mismatch_while_in_progress(five, settings):
    root, migration_plan = five
    api.execute(root, migration_plan, rewriter=FakeRewriter(fail={"F4.java"}), settings=settings)

    other = migration_plan.model_copy(update={"fingerprint": "0" * 64})
    with pytest.raises(PlanMismatchError):
        api.execute(root, other, rewriter=FakeRewriter(), settings=settings)


def test_corrupt_progress_record_fails_run(five, settings):
    root, migration_plan = five
    store = CheckpointStore(settings.state_dir, root)
    store.record_path.parent.mkdir(parents=True)
    store.record_path.write_text("{not json", encoding="utf-8")

    result = api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)

    assert result.outcome == ExecutionOutcome.FAILED
    assert result.state.status == MigrationStatus.FAILED
    assert "progress record" in result.message


def test_cancel_before_first_phase(five, settings):
    root, migration_plan = five
    before = (root / "pom.xml").read_bytes()
    token = CancellationToken()
    token.cancel()

    result = api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings, cancel=token)

    assert result.outcome == ExecutionOutcome.CANCELLED
    assert result.phases_completed == []
    assert (root / "pom.xml").read_bytes() == before


def test_phase_range(five, settings):
    root, migration_plan = five
    with pytest.raises(ValueError):
        api.execute(root, migration_plan, (0, 2), rewriter=FakeRewriter(), settings=settings)
    with pytest.raises(InvalidTransitionError):
        api.execute(root, migration_plan, (3, 4), rewriter=FakeRewriter(), settings=settings)

    result = api.execute(root, migration_plan, (1, 1), rewriter=FakeRewriter(), settings=settings)
    assert result.state.label == "phase-1-complete"
    assert "import javax.widget.Button;" in (root / SRC / "F0.java").read_text(encoding="utf-8")


def test_verify_and_finalize_lifecycle(five, settings):
    root, migration_plan = five
    assert api.status(root, settings=settings).state.label == "not-started"
    api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)

    assert api.mark_verified(root, settings=settings).state.status == MigrationStatus.VERIFIED
    record = api.finalize(root, settings=settings)

    assert record.state.status == MigrationStatus.COMPLETE
    assert record.checkpoints == {}
    store = CheckpointStore(settings.state_dir, root)
    assert list(store.snapshot_dir.iterdir()) == []
    with pytest.raises(InvalidTransitionError):
        api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)


@pytest.mark.parametrize("last_phase", [1, 2, 3])
def test_full_rollback_after_partial_execution(make_project, small_kb, settings, last_phase):
    root = make_project(_layered())
    migration_plan = api.plan(root, knowledge_base=small_kb, settings=settings)
    before = _snapshot(root)

    result = api.execute(root, migration_plan, (1, last_phase), rewriter=FakeRewriter(), settings=settings)
    assert result.state.label == f"phase-{last_phase}-complete"

    record = api.rollback(root, 1, settings=settings)

    assert record.state.label == "in-progress-phase-1"
    assert record.checkpoints == {}
    assert _snapshot(root) == before


def test_undecodable_rewrite_command_output_fails_only_that_file(five, settings):
    root, migration_plan = five
    original = (root / "pom.xml").read_bytes()
    script = "import sys; sys.stderr.buffer.write(b'\\xff\\xfe not utf-8\\n'); sys.exit(1)"
    rewriter = CommandRewriter([sys.executable, "-c", script])

    result = api.execute(root, migration_plan, rewriter=rewriter, settings=settings)

    assert result.outcome == ExecutionOutcome.BLOCKED
    assert result.progress.files_failed == ["pom.xml"]
    assert "exited 1" in result.per_file[0].error
    assert (root / "pom.xml").read_bytes() == original


def test_unexpected_rewriter_exception_is_a_file_failure(five, settings):
    root, migration_plan = five
    original = (root / SRC / "F2.java").read_bytes()
    apply = FakeRewriter()

    def rewriter(path, actions):
        if path.name == "F2.java":
            path.write_text("partly written", encoding="utf-8")
            raise ValueError("unexpected token")
        apply(path, actions)

    result = api.execute(root, migration_plan, rewriter=rewriter, settings=settings)

    assert result.outcome == ExecutionOutcome.BLOCKED
    assert result.progress.files_failed == [f"{SRC}/F2.java"]
    assert result.progress.file_errors[f"{SRC}/F2.java"] == "ValueError: unexpected token"
    assert (root / SRC / "F2.java").read_bytes() == original
    assert "import jakarta.widget.Button;" in (root / SRC / "F1.java").read_text(encoding="utf-8")


def test_store_failure_mid_run_is_persisted(five, settings, monkeypatch):
    root, migration_plan = five

    def broken_snapshot(self, file):
        raise CheckpointStoreError(f"Cannot write snapshot for {file}: disk full")

    monkeypatch.setattr(CheckpointStore, "snapshot", broken_snapshot)
    result = api.execute(root, migration_plan, rewriter=FakeRewriter(), settings=settings)

    assert result.outcome == ExecutionOutcome.FAILED
    assert "disk full" in result.message
    persisted = api.status(root, settings=settings)
    assert persisted.state.status == MigrationStatus.FAILED
    assert "disk full" in persisted.failure_reason
