"""Public API for jakartashift.

High-level functions that return complete, structured results. Callers
should use these instead of importing from ``_internal``.
"""

import logging
import os
import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from jakartashift._internal.executor import CancellationToken, ExecutionResult, PhaseExecutor
from jakartashift._internal.io.archive import read_archive
from jakartashift._internal.io.checkpoint_store import CheckpointStore
from jakartashift._internal.io.knowledge_base import load_knowledge_base
from jakartashift._internal.io.manifests import load_manifests
from jakartashift._internal.rewrite import Rewriter, default_rewriter
from jakartashift._internal.runner import run_artifact
from jakartashift._internal.scanner import scan_project
from jakartashift.codes import (
    ErrorCategory,
    FileKind,
    NamespaceState,
    VerificationStatus,
    WarningCode,
)
from jakartashift.config import EngineSettings, load_settings
from jakartashift.contracts import ImpactSummary, Readiness, RiskAssessment, WarningRecord
from jakartashift.exceptions import ProjectRootError
from jakartashift.kernel.classify import (
    Blocker,
    Classification,
    Recommendation,
    classify_graph,
    detect_blockers,
    recommend,
)
from jakartashift.kernel.diagnosis import (
    ErrorAnalysis,
    RuntimeErrorRecord,
    analyze_errors,
    binary_incompatible_blockers,
    cross_check,
    parse_runtime_errors,
    parse_runtime_warnings,
)
from jakartashift.kernel.graph import DependencyGraph, GraphSnapshot, build_graph
from jakartashift.kernel.knowledge import KnowledgeBase
from jakartashift.kernel.plan import LAST_PHASE_NUMBER, MigrationPlan, PlanOptions, build_plan
from jakartashift.kernel.progress import ProgressRecord, new_record
from jakartashift.kernel.usage import FileUsage

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike, Path]


def _normalize_path(path: PathLike) -> Path:
    """Normalize path input to Path object."""
    return Path(path) if not isinstance(path, Path) else path


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AnalysisResult(BaseModel):
    """Stable result model for a project analysis."""
    project_path: str
    kb_version: str
    graph: GraphSnapshot
    classifications: Dict[str, Classification]  # node id -> classification
    blockers: List[Blocker]
    recommendations: List[Recommendation]
    usages: List[FileUsage]  # files with at least one legacy usage, sorted by path
    references: Dict[str, List[str]] = Field(default_factory=dict)  # source path -> source paths it depends on
    file_kinds: Dict[str, FileKind] = Field(default_factory=dict)
    readiness: Readiness
    risk: RiskAssessment
    warnings: List[WarningRecord] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.graph.partial


class VerificationContext(BaseModel):
    """Optional inputs to runtime verification."""
    project_path: Optional[str] = None
    plan: Optional[MigrationPlan] = None  # for correlating failures to phases and files
    command: List[str] = Field(default_factory=list)  # overrides `java -jar`
    timeout_seconds: Optional[float] = None
    memory_mb: Optional[int] = None


class VerificationResult(BaseModel):
    artifact_path: str
    status: VerificationStatus
    exit_code: Optional[int] = None
    errors: List[RuntimeErrorRecord] = Field(default_factory=list)
    analysis: Optional[ErrorAnalysis] = None
    warnings: List[WarningRecord] = Field(default_factory=list)
    duration_seconds: float = 0.0


def _settings(settings: Optional[EngineSettings]) -> EngineSettings:
    return settings if settings is not None else load_settings()


def _knowledge_base(knowledge_base: Optional[KnowledgeBase], settings: EngineSettings) -> KnowledgeBase:
    if knowledge_base is not None:
        return knowledge_base
    return load_knowledge_base(settings.knowledge_base_path)


def _project_root(project_path: PathLike) -> Path:
    root = _normalize_path(project_path)
    if not root.is_dir() or not os.access(root, os.R_OK | os.X_OK):
        raise ProjectRootError(root)
    return root.resolve()


# Readiness and risk

def compute_readiness(classifications: Dict[str, Classification], graph: DependencyGraph,
                      blockers: Sequence[Blocker]) -> Readiness:
    """Share of namespace-bearing dependencies already on the successor namespace.

    Halved while any blocker is open.
    """
    states = [classifications[n].state for n in graph.artifact_ids() if n in classifications]
    successor = states.count(NamespaceState.SUCCESSOR)
    relevant = successor + states.count(NamespaceState.LEGACY) + states.count(NamespaceState.MIXED)
    score = 1.0 if relevant == 0 else successor / relevant
    if blockers:
        score /= 2
    score = round(score, 4)
    if score >= 0.8:
        message = "Ready to migrate"
    elif score >= 0.5:
        message = "Mostly ready; resolve the remaining legacy dependencies first"
    elif score >= 0.3:
        message = "Significant work required before migration"
    else:
        message = "Not ready: most dependencies are still on the legacy namespace"
    return Readiness(score=score, message=message)


def compute_risk(blockers: Sequence[Blocker], usages: Sequence[FileUsage],
                 classifications: Dict[str, Classification]) -> RiskAssessment:
    factors: List[str] = []
    score = 0.0
    if blockers:
        score += min(0.6, 0.2 * len(blockers))
        factors.append(f"{len(blockers)} blocker(s)")
    dynamic = [u.path for u in usages if u.is_dynamic]
    if dynamic:
        score += min(0.3, 0.05 * len(dynamic))
        factors.append(f"{len(dynamic)} file(s) with dynamic or reflective usage")
    mixed = [c.artifact for c in classifications.values() if c.state == NamespaceState.MIXED]
    if mixed:
        score += 0.2
        factors.append(f"{len(mixed)} node(s) mixing both namespaces")
    unmapped = sum(len(u.unmapped) for u in usages)
    if unmapped:
        score += 0.1
        factors.append(f"{unmapped} usage(s) with no known successor")
    score = round(min(1.0, score), 4)
    level = "high" if score > 0.5 else "medium" if score > 0.2 else "low"
    return RiskAssessment(level=level, factors=factors, score=score)


def _warnings_for(manifest_set, graph: DependencyGraph) -> List[WarningRecord]:
    warnings = [
        WarningRecord(code=WarningCode.MANIFEST_PARSE_ERROR, message=e.message, path=e.path)
        for e in manifest_set.errors
    ]
    if not manifest_set.manifests and not manifest_set.errors:
        warnings.append(WarningRecord(code=WarningCode.NO_MANIFEST_FOUND, message="no build manifest found"))
    for manifest in manifest_set.manifests:
        for coordinate in manifest.unresolved:
            warnings.append(WarningRecord(
                code=WarningCode.UNRESOLVED_VERSION,
                message=f"version of {coordinate} could not be resolved",
                path=manifest.path,
            ))
    if graph.is_partial:
        warnings.append(WarningRecord(
            code=WarningCode.PARTIAL_GRAPH,
            message=f"dependency graph is partial: {len(graph.errors)} manifest(s) skipped",
        ))
    return warnings


# Operations

def analyze(
    project_path: PathLike,
    *,
    knowledge_base: Optional[KnowledgeBase] = None,
    settings: Optional[EngineSettings] = None,
) -> AnalysisResult:
    """Build the dependency graph, classify it and scan the project's files.

    Malformed manifests and unreadable files become warnings; only a missing
    or unreadable project root raises (ProjectRootError).
    """
    settings = _settings(settings)
    root = _project_root(project_path)
    kb = _knowledge_base(knowledge_base, settings)

    manifest_set = load_manifests(root, settings.excluded_dirs)
    graph = build_graph(manifest_set.manifests, manifest_set.project_name, manifest_set.errors)
    classifications = classify_graph(graph, kb)
    blockers = detect_blockers(graph, classifications, kb)
    recommendations = recommend(graph, classifications, kb)
    scan = scan_project(root, kb, settings.excluded_dirs, settings.max_workers)

    warnings = _warnings_for(manifest_set, graph) + scan.warnings
    logger.info(
        "Analyzed %s: %d artifacts, %d blockers, %d recommendations, %d files with legacy usage",
        root, len(graph.artifact_ids()), len(blockers), len(recommendations), len(scan.usages),
    )
    return AnalysisResult(
        project_path=str(root),
        kb_version=kb.kb_version,
        graph=graph.to_snapshot(),
        classifications=classifications,
        blockers=blockers,
        recommendations=recommendations,
        usages=scan.usages,
        references=scan.references,
        file_kinds=scan.file_kinds,
        readiness=compute_readiness(classifications, graph, blockers),
        risk=compute_risk(blockers, scan.usages, classifications),
        warnings=warnings,
    )


def plan(
    project_path: PathLike,
    analysis: Optional[AnalysisResult] = None,
    *,
    options: Optional[PlanOptions] = None,
    knowledge_base: Optional[KnowledgeBase] = None,
    settings: Optional[EngineSettings] = None,
) -> MigrationPlan:
    """Compute the four-phase plan; runs analyze() first when no analysis is given."""
    settings = _settings(settings)
    if analysis is None:
        analysis = analyze(project_path, knowledge_base=knowledge_base, settings=settings)
    if options is None:
        options = PlanOptions(high_risk_max_batch=settings.high_risk_max_batch, high_density=settings.high_density)
    graph = DependencyGraph.from_snapshot(analysis.graph)
    result = build_plan(
        graph,
        analysis.blockers,
        analysis.usages,
        references=analysis.references,
        recommendations=analysis.recommendations,
        options=options,
        project_path=analysis.project_path,
        kb_version=analysis.kb_version,
    )
    logger.info("Plan %s: %s", result.fingerprint[:12],
                ", ".join(f"phase {p.number}={len(p.files)}" for p in result.phases))
    return result


def _executor(project_path: PathLike, settings: EngineSettings, rewriter: Optional[Rewriter] = None) -> PhaseExecutor:
    root = _project_root(project_path)
    store = CheckpointStore(settings.state_dir, root)
    return PhaseExecutor(
        store,
        root,
        rewriter if rewriter is not None else default_rewriter(settings.rewrite_command),
        max_workers=settings.max_workers,
    )


def execute(
    project_path: PathLike,
    plan: MigrationPlan,
    phase_range: Tuple[int, int] = (1, LAST_PHASE_NUMBER),
    *,
    rewriter: Optional[Rewriter] = None,
    settings: Optional[EngineSettings] = None,
    cancel: Optional[CancellationToken] = None,
) -> ExecutionResult:
    """Execute plan phases in order with checkpoints; resumes an in-progress run."""
    settings = _settings(settings)
    return _executor(project_path, settings, rewriter).run(plan, phase_range, cancel)


def skip(project_path: PathLike, files: Iterable[str], *, settings: Optional[EngineSettings] = None) -> ProgressRecord:
    """Acknowledge failed or pending files so their phase can complete."""
    return _executor(project_path, _settings(settings)).skip(files)


def rollback(
    project_path: PathLike,
    to_phase: int = 1,
    *,
    file: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
) -> ProgressRecord:
    """Restore files from their checkpoints.

    With ``file``, undo that single file of the current phase; otherwise
    undo every phase >= to_phase.
    """
    executor = _executor(project_path, _settings(settings))
    if file is not None:
        return executor.rollback_file(file)
    return executor.rollback(to_phase)


def status(project_path: PathLike, *, settings: Optional[EngineSettings] = None) -> ProgressRecord:
    """Persisted progress for the project (a fresh not-started record when none exists)."""
    settings = _settings(settings)
    root = _project_root(project_path)
    record = CheckpointStore(settings.state_dir, root).load()
    return record if record is not None else new_record(str(root))


def mark_verified(project_path: PathLike, *, settings: Optional[EngineSettings] = None) -> ProgressRecord:
    return _executor(project_path, _settings(settings)).mark_verified()


def finalize(project_path: PathLike, *, settings: Optional[EngineSettings] = None) -> ProgressRecord:
    """verified -> complete; releases checkpoints and snapshots."""
    return _executor(project_path, _settings(settings)).finalize()


def verify(
    artifact_path: PathLike,
    context: Optional[VerificationContext] = None,
    *,
    knowledge_base: Optional[KnowledgeBase] = None,
    settings: Optional[EngineSettings] = None,
) -> VerificationResult:
    """Run the built artifact and classify any runtime failure.

    Status: ``timeout`` when killed at the deadline, ``failed`` on a non-zero
    exit or a missing artifact, ``partial`` on a zero exit that still logged
    linkage or class-loading errors, ``success`` otherwise. When no runtime
    error matches a known signature on an unsuccessful run, the archive
    itself is cross-checked for mixed namespaces.

    Raises:
        VerificationSetupError: the run command could not be started.
    """
    settings = _settings(settings)
    context = context or VerificationContext()
    kb = _knowledge_base(knowledge_base, settings)
    artifact = _normalize_path(artifact_path)
    if not artifact.is_file():
        return VerificationResult(
            artifact_path=str(artifact),
            status=VerificationStatus.FAILED,
            analysis=ErrorAnalysis(
                category=ErrorCategory.UNKNOWN,
                root_cause=f"Artifact {artifact} does not exist",
                remediation=["Build the project before verifying it"],
            ),
        )

    started = time.monotonic()
    outcome = run_artifact(
        artifact,
        timeout=context.timeout_seconds or settings.verify_timeout_seconds,
        memory_mb=context.memory_mb or settings.verify_memory_mb,
        java_executable=settings.java_executable,
        command=context.command or settings.verify_command,
        cwd=_normalize_path(context.project_path) if context.project_path else None,
    )
    duration = round(time.monotonic() - started, 3)

    errors = parse_runtime_errors(outcome.stdout, outcome.stderr, _utc_now())
    warnings = [
        WarningRecord(code=WarningCode.RUNTIME_WARNING, message=line)
        for line in parse_runtime_warnings(outcome.stdout, outcome.stderr)
    ]
    analysis = analyze_errors(errors, kb, context.plan)

    if outcome.timed_out:
        status_ = VerificationStatus.TIMEOUT
    elif outcome.returncode != 0:
        status_ = VerificationStatus.FAILED
    elif errors:
        status_ = VerificationStatus.PARTIAL
    else:
        status_ = VerificationStatus.SUCCESS

    if analysis is None and status_ != VerificationStatus.SUCCESS:
        try:
            analysis = cross_check(read_archive(artifact, kb), kb)
        except (zipfile.BadZipFile, OSError) as e:
            logger.warning("Cannot read archive %s: %s", artifact, e)
            warnings.append(WarningRecord(code=WarningCode.ARCHIVE_READ_ERROR, message=str(e), path=str(artifact)))

    logger.info("Verification of %s: %s (%d error(s))", artifact, status_.value, len(errors))
    return VerificationResult(
        artifact_path=str(artifact),
        status=status_,
        exit_code=outcome.returncode,
        errors=errors,
        analysis=analysis,
        warnings=warnings,
        duration_seconds=duration,
    )


def incorporate_findings(analysis: AnalysisResult, verification: VerificationResult) -> AnalysisResult:
    """Add binary-incompatible blockers from a verification to an analysis.

    Re-plan from the returned analysis; existing plans are never patched.
    """
    if verification.analysis is None:
        return analysis
    graph = DependencyGraph.from_snapshot(analysis.graph)
    existing = {(b.artifact, b.kind) for b in analysis.blockers}
    added = [b for b in binary_incompatible_blockers(verification.analysis, graph)
             if (b.artifact, b.kind) not in existing]
    if not added:
        return analysis
    blockers = sorted(analysis.blockers + added, key=lambda b: (b.artifact, b.kind.value))
    logger.info("Incorporated %d runtime blocker(s)", len(added))
    return analysis.model_copy(update={
        "blockers": blockers,
        "readiness": compute_readiness(analysis.classifications, graph, blockers),
        "risk": compute_risk(blockers, analysis.usages, analysis.classifications),
    })


def impact_summary(analysis: AnalysisResult) -> ImpactSummary:
    """Effort estimate: 2 minutes per file, 1 per usage, 30 per blocker."""
    files = len(analysis.usages)
    usages = sum(len(u.usages) for u in analysis.usages)
    blockers = len(analysis.blockers)
    score = analysis.risk.score
    if blockers > 5 or score > 0.8:
        complexity = "high"
    elif files > 50 or usages > 100 or blockers > 2 or score > 0.5:
        complexity = "medium"
    else:
        complexity = "low"
    return ImpactSummary(
        files=files,
        usages=usages,
        blockers=blockers,
        recommendations=len(analysis.recommendations),
        estimated_minutes=2 * files + usages + 30 * blockers,
        complexity=complexity,
    )
