"""Runtime failure parsing and classification.

Process output is parsed into RuntimeErrorRecords, each record is matched
against an ordered signature table (first match wins), and the strongest
finding becomes the ErrorAnalysis. When nothing in the output matches, the
built archive's declared classpath is cross-checked instead.

Pure: the caller supplies the output text, the archive listing and the
timestamp.
"""

import re
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from pydantic import BaseModel, Field

from jakartashift.codes import BlockerKind, ErrorCategory, ErrorKind, NamespaceState
from jakartashift.kernel.artifact import Artifact
from jakartashift.kernel.classify import Blocker, classify
from jakartashift.kernel.graph import DependencyGraph
from jakartashift.kernel.knowledge import KnowledgeBase
from jakartashift.kernel.plan import MigrationPlan


EXCEPTION_KINDS = {
    "ClassNotFoundException": ErrorKind.CLASS_NOT_FOUND,
    "NoClassDefFoundError": ErrorKind.NO_CLASS_DEF_FOUND,
    "LinkageError": ErrorKind.LINKAGE_ERROR,
    "IncompatibleClassChangeError": ErrorKind.LINKAGE_ERROR,
    "AbstractMethodError": ErrorKind.LINKAGE_ERROR,
    "NoSuchMethodError": ErrorKind.NO_SUCH_METHOD,
    "NoSuchFieldError": ErrorKind.NO_SUCH_METHOD,
    "ClassCastException": ErrorKind.CLASS_CAST,
}
CLASS_LOADING_KINDS = frozenset({ErrorKind.CLASS_NOT_FOUND, ErrorKind.NO_CLASS_DEF_FOUND})
BINARY_EXCEPTIONS = frozenset({"NoSuchMethodError", "AbstractMethodError", "IncompatibleClassChangeError"})

_HEADER = re.compile(
    r"^(?:Exception in thread \"[^\"]*\"\s+|Caused by:\s+)?"
    r"(?:[\w$]+\.)*(?P<exception>[A-Z][\w$]*(?:Exception|Error))(?::\s*(?P<message>.*))?$"
)
_FRAME = re.compile(r"^\s+at\s+[\w$.<>/]+\((?P<source>[^):]+)(?::\d+)?\)")
_CLASS_NAME = re.compile(r"\b(?:[a-z_][\w$]*[./])+[A-Z][\w$]*")
_WARNING = re.compile(r"\b(?:warning|deprecated)\b", re.IGNORECASE)


class RuntimeErrorRecord(BaseModel):
    kind: ErrorKind
    exception: str
    message: str = ""
    trace: List[str] = Field(default_factory=list)
    symbol: Optional[str] = None  # first class name in the message, dotted
    source_file: Optional[str] = None  # first source file in the stack trace
    timestamp: str


class ErrorAnalysis(BaseModel):
    category: ErrorCategory
    root_cause: str
    contributing_factors: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    remediation: List[str] = Field(default_factory=list)
    related_phases: List[int] = Field(default_factory=list)
    related_files: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)  # coordinates implicated by the finding


class ArchiveContents(BaseModel):
    """What the built artifact declares about its own classpath."""
    path: str
    classpath: List[str] = Field(default_factory=list)  # manifest Class-Path entries
    embedded_jars: List[str] = Field(default_factory=list)  # WEB-INF/lib, BOOT-INF/lib jar names
    embedded_artifacts: List[Artifact] = Field(default_factory=list)  # from pom.properties
    mixed_classes: List[str] = Field(default_factory=list)  # class entries naming both namespaces


def _dotted(name: str) -> str:
    return name.replace("/", ".")


def parse_runtime_errors(stdout: str, stderr: str, timestamp: str) -> List[RuntimeErrorRecord]:
    """Extract linkage and class-loading failures from process output, in output order."""
    records: List[RuntimeErrorRecord] = []
    current: Optional[Dict] = None

    def flush():
        if current is not None:
            records.append(RuntimeErrorRecord(timestamp=timestamp, **current))

    for line in (stderr + "\n" + stdout).splitlines():
        header = _HEADER.match(line.strip()) if not line.startswith((" ", "\t")) else None
        if header and header.group("exception") in EXCEPTION_KINDS:
            flush()
            message = (header.group("message") or "").strip()
            names = _CLASS_NAME.findall(message)
            current = {
                "kind": EXCEPTION_KINDS[header.group("exception")],
                "exception": header.group("exception"),
                "message": message,
                "trace": [],
                "symbol": _dotted(names[0]) if names else None,
                "source_file": None,
            }
            continue
        if current is None:
            continue
        frame = _FRAME.match(line)
        if frame:
            current["trace"].append(line.strip())
            if current["source_file"] is None and frame.group("source") not in ("Native Method", "Unknown Source"):
                current["source_file"] = frame.group("source")
        elif line.strip().startswith("..."):
            current["trace"].append(line.strip())
        else:
            flush()
            current = None
    flush()
    return records


def parse_runtime_warnings(stdout: str, stderr: str) -> List[str]:
    """Lines that mention a warning or a deprecation, stripped, in order."""
    return [
        line.strip()
        for line in (stderr + "\n" + stdout).splitlines()
        if line.strip() and _WARNING.search(line)
    ]


class Finding(NamedTuple):
    category: ErrorCategory
    confidence: float
    root_cause: str
    remediation: List[str]
    artifacts: List[str]


def _names(record: RuntimeErrorRecord) -> List[str]:
    return [_dotted(n) for n in _CLASS_NAME.findall(record.message)]


def _successor_target(symbol: str, kb: KnowledgeBase) -> Optional[str]:
    entry = kb.entry_for_symbol(symbol)
    if entry is None:
        return None
    version = entry.default_version or entry.successor_version(None)
    return f"{entry.successor}:{version}" if version else entry.successor


def _legacy_class_missing(record: RuntimeErrorRecord, kb: KnowledgeBase) -> Optional[Finding]:
    if record.kind not in CLASS_LOADING_KINDS or not record.symbol or not kb.is_legacy_symbol(record.symbol):
        return None
    target = _successor_target(record.symbol, kb)
    entry = kb.entry_for_symbol(record.symbol)
    remediation = [f"Migrate the code or library that still references {record.symbol}"]
    if target:
        remediation.append(f"Use {target} in place of {entry.legacy}")
    return Finding(
        ErrorCategory.CLASSPATH_ISSUE, 0.9,
        f"Legacy class {record.symbol} is referenced but no longer on the classpath",
        remediation, [entry.legacy] if entry else [],
    )


def _namespace_conflict(record: RuntimeErrorRecord, kb: KnowledgeBase) -> Optional[Finding]:
    if record.kind not in (ErrorKind.LINKAGE_ERROR, ErrorKind.CLASS_CAST):
        return None
    names = _names(record)
    legacy = [n for n in names if kb.is_legacy_symbol(n)]
    successor = [n for n in names if kb.is_successor_symbol(n)]
    if not legacy or not successor:
        return None
    entries = [kb.entry_for_symbol(n) for n in legacy + successor]
    coordinates = sorted({e.legacy for e in entries if e is not None})
    return Finding(
        ErrorCategory.NAMESPACE_CONFLICT, 0.85,
        f"{record.exception} between {legacy[0]} and {successor[0]}: both namespaces are loaded",
        [
            "Remove the remaining legacy artifacts from the runtime classpath",
            "Upgrade libraries compiled against the legacy namespace to successor releases",
        ],
        coordinates,
    )


def _successor_class_missing(record: RuntimeErrorRecord, kb: KnowledgeBase) -> Optional[Finding]:
    if record.kind not in CLASS_LOADING_KINDS or not record.symbol or not kb.is_successor_symbol(record.symbol):
        return None
    target = _successor_target(record.symbol, kb)
    entry = kb.entry_for_symbol(record.symbol)
    remediation = [f"Add {target} to the build" if target else f"Add an artifact providing {record.symbol}"]
    return Finding(
        ErrorCategory.CLASSPATH_ISSUE, 0.85,
        f"Successor class {record.symbol} is missing from the classpath",
        remediation, [entry.legacy] if entry else [],
    )


def _binary_incompatibility(record: RuntimeErrorRecord, kb: KnowledgeBase) -> Optional[Finding]:
    if record.exception not in BINARY_EXCEPTIONS:
        return None
    subject = record.symbol or record.message
    entry = kb.entry_for_symbol(record.symbol) if record.symbol else None
    return Finding(
        ErrorCategory.BINARY_INCOMPATIBILITY, 0.75,
        f"{record.exception}: {subject} was compiled against a different API version",
        ["Recompile against the successor API", "Align library versions so all modules use one API release"],
        [entry.legacy] if entry else [],
    )


def _generic_class_loading(record: RuntimeErrorRecord, kb: KnowledgeBase) -> Optional[Finding]:
    if record.kind not in CLASS_LOADING_KINDS:
        return None
    subject = record.symbol or record.message or "unknown class"
    return Finding(
        ErrorCategory.CLASSPATH_ISSUE, 0.6,
        f"Class {subject} could not be loaded",
        ["Check that the artifact providing the class is packaged with the application"],
        [],
    )


SIGNATURES: Tuple[Callable[[RuntimeErrorRecord, KnowledgeBase], Optional[Finding]], ...] = (
    _legacy_class_missing,
    _namespace_conflict,
    _successor_class_missing,
    _binary_incompatibility,
    _generic_class_loading,
)


def match_signature(record: RuntimeErrorRecord, kb: KnowledgeBase) -> Optional[Finding]:
    """First matching signature for one record, or None."""
    for signature in SIGNATURES:
        finding = signature(record, kb)
        if finding is not None:
            return finding
    return None


def _correlate(symbols: Iterable[str], plan: Optional[MigrationPlan], kb: KnowledgeBase,
               category: ErrorCategory) -> Tuple[List[int], List[str]]:
    if plan is None:
        return [], []
    packages: Set[str] = set()
    for symbol in symbols:
        package = kb.legacy_package_of(symbol)
        if package is not None:
            packages.add(package)
    files: Set[str] = set()
    phases: Set[int] = set()
    for phase in plan.phases:
        for action in phase.actions:
            for change in action.changes:
                if kb.legacy_package_of(change.symbol) in packages:
                    files.add(action.file)
                    phases.add(phase.number)
    if category == ErrorCategory.CLASSPATH_ISSUE and plan.phase(1).files:
        phases.add(1)
        files.update(plan.phase(1).files)
    return sorted(phases), sorted(files)


def analyze_errors(errors: List[RuntimeErrorRecord], kb: KnowledgeBase,
                   plan: Optional[MigrationPlan] = None) -> Optional[ErrorAnalysis]:
    """Classify every record and return the strongest finding.

    Ties keep output order, so the earliest failure wins. Returns None when
    no record matches any signature.
    """
    matched: List[Tuple[Finding, RuntimeErrorRecord]] = []
    for record in errors:
        finding = match_signature(record, kb)
        if finding is not None:
            matched.append((finding, record))
    if not matched:
        return None

    best_index = max(range(len(matched)), key=lambda i: (matched[i][0].confidence, -i))
    finding, record = matched[best_index]
    contributing = []
    for i, (other, _) in enumerate(matched):
        if i != best_index and other.root_cause not in contributing and other.root_cause != finding.root_cause:
            contributing.append(other.root_cause)
    symbols = [n for _, r in matched for n in _names(r)]
    phases, files = _correlate(symbols, plan, kb, finding.category)
    return ErrorAnalysis(
        category=finding.category,
        root_cause=finding.root_cause,
        contributing_factors=contributing,
        confidence=finding.confidence,
        remediation=finding.remediation,
        related_phases=phases,
        related_files=files,
        artifacts=sorted({a for f, _ in matched for a in f.artifacts}),
    )


_JAR_NAME = re.compile(r"^(?P<name>.+?)-(?P<version>\d[\w.\-]*)\.jar$")


def artifact_from_jar(jar: str, kb: KnowledgeBase) -> Optional[Artifact]:
    """Best-effort artifact for a bare jar file name, using the KB to recover the group."""
    base = jar.rsplit("/", 1)[-1]
    match = _JAR_NAME.match(base)
    if match is None:
        return None
    name, version = match.group("name"), match.group("version")
    entry = kb.lookup_name(name)
    if entry is None:
        return Artifact(group="", name=name, version=version)
    for coordinate in (entry.legacy, entry.successor):
        group, _, entry_name = coordinate.partition(":")
        if entry_name == name:
            return Artifact(group=group, name=name, version=version)
    return Artifact(group="", name=name, version=version)


def cross_check(contents: ArchiveContents, kb: KnowledgeBase) -> ErrorAnalysis:
    """Reclassify the archive's declared classpath when runtime output explains nothing."""
    artifacts: Dict[str, Artifact] = {}
    for a in contents.embedded_artifacts:
        artifacts[a.id] = a
    for jar in sorted(set(contents.classpath) | set(contents.embedded_jars)):
        a = artifact_from_jar(jar, kb)
        if a is not None and a.group and a.coordinate not in {x.coordinate for x in artifacts.values()}:
            artifacts[a.id] = a

    legacy: List[str] = []
    successor: List[str] = []
    for artifact_id in sorted(artifacts):
        state = classify(artifacts[artifact_id], kb).state
        if state == NamespaceState.LEGACY:
            legacy.append(artifact_id)
        elif state == NamespaceState.SUCCESSOR:
            successor.append(artifact_id)

    coordinates = sorted({artifacts[i].coordinate for i in legacy})
    if contents.mixed_classes or (legacy and successor):
        factors = []
        if legacy:
            factors.append(f"legacy artifacts packaged: {', '.join(legacy)}")
        if contents.mixed_classes:
            factors.append(f"{len(contents.mixed_classes)} class(es) reference both namespaces")
        return ErrorAnalysis(
            category=ErrorCategory.NAMESPACE_CONFLICT,
            root_cause=f"{contents.path} mixes legacy and successor namespaces",
            contributing_factors=factors,
            confidence=0.7,
            remediation=["Remove or upgrade the legacy artifacts packaged with the application"],
            artifacts=coordinates,
        )
    if legacy:
        return ErrorAnalysis(
            category=ErrorCategory.CLASSPATH_ISSUE,
            root_cause=f"{contents.path} still packages legacy artifacts",
            contributing_factors=[f"legacy artifacts packaged: {', '.join(legacy)}"],
            confidence=0.6,
            remediation=[f"Replace {c}" for c in coordinates],
            artifacts=coordinates,
        )
    return ErrorAnalysis(
        category=ErrorCategory.UNKNOWN,
        root_cause="No namespace problem found in the runtime output or the archive",
        confidence=0.0,
    )


def binary_incompatible_blockers(analysis: ErrorAnalysis, graph: DependencyGraph) -> List[Blocker]:
    """Blockers for graph artifacts implicated by a namespace conflict or binary incompatibility."""
    if analysis.category not in (ErrorCategory.NAMESPACE_CONFLICT, ErrorCategory.BINARY_INCOMPATIBILITY):
        return []
    wanted = set(analysis.artifacts)
    blockers = []
    for node_id in graph.artifact_ids():
        if graph.nodes[node_id].coordinate in wanted:
            blockers.append(Blocker(
                artifact=node_id,
                kind=BlockerKind.BINARY_INCOMPATIBLE,
                reason=analysis.root_cause,
                mitigations=list(analysis.remediation),
                confidence=analysis.confidence,
            ))
    return blockers
