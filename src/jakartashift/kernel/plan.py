"""Build the four-phase migration plan.

Phases are fixed:

1. build manifests that declare artifacts needing a coordinate change
2. source files whose in-project prerequisites are none, or only files that
   themselves have none
3. every other source file, levelled by the strongly connected components
   of the prerequisite graph; a cycle is one indivisible unit
4. configuration, markup and test files

"A depends on B" means A references B, so B must be migrated no later than
A. A file is never placed in an earlier phase than a file it depends on,
unless both belong to the same cycle.

Plans are recomputed from their inputs, never patched; ``build_plan`` is
pure and deterministic.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, Field

from jakartashift.codes import ActionType, FileKind, RiskLevel, UsageKind
from jakartashift.kernel.classify import Blocker, Recommendation
from jakartashift.kernel.graph import DependencyGraph, condensation_levels
from jakartashift.kernel.hash_utils import content_hash
from jakartashift.kernel.usage import FileUsage


PHASE_NUMBERS = (1, 2, 3, 4)
LAST_PHASE_NUMBER = PHASE_NUMBERS[-1]
PHASE_DESCRIPTIONS = {
    1: "Update build manifests to successor artifact coordinates",
    2: "Migrate source files with no in-project prerequisites",
    3: "Migrate source files that depend on other migrated files",
    4: "Migrate configuration, markup and test files",
}

ACTION_FOR_USAGE = {
    UsageKind.IMPORT: ActionType.UPDATE_IMPORTS,
    UsageKind.STATIC_IMPORT: ActionType.UPDATE_IMPORTS,
    UsageKind.QUALIFIED_REFERENCE: ActionType.UPDATE_REFERENCES,
    UsageKind.STRING_LITERAL: ActionType.UPDATE_STRING_LITERALS,
    UsageKind.REFLECTIVE: ActionType.UPDATE_STRING_LITERALS,
    UsageKind.XML_NAMESPACE: ActionType.UPDATE_XML_NAMESPACE,
    UsageKind.XML_CLASS_REFERENCE: ActionType.UPDATE_CLASS_REFERENCES,
    UsageKind.PROPERTY_KEY: ActionType.UPDATE_CLASS_REFERENCES,
    UsageKind.SERVICE_FILE: ActionType.UPDATE_CLASS_REFERENCES,
    UsageKind.COORDINATE: ActionType.UPDATE_DEPENDENCY,
}
_ACTION_ORDER = {action: i for i, action in enumerate(ActionType)}


class SymbolChange(BaseModel):
    """A concrete before/after edit on one line."""
    line: int
    symbol: str
    before: str
    after: Optional[str] = None  # None: no known successor, needs a manual decision


class FileAction(BaseModel):
    file: str
    action_type: ActionType
    changes: List[SymbolChange]


class Phase(BaseModel):
    number: int
    description: str
    files: List[str] = Field(default_factory=list)  # execution order
    actions: List[FileAction] = Field(default_factory=list)
    prerequisites: List[int] = Field(default_factory=list)
    risk: RiskLevel = RiskLevel.LOW
    risk_factors: List[str] = Field(default_factory=list)
    batches: List[List[str]] = Field(default_factory=list)
    cycles: List[List[str]] = Field(default_factory=list)
    blocker_density: float = 0.0


class MigrationPlan(BaseModel):
    """Ordered phases plus a content fingerprint over them."""
    project_path: str = ""
    kb_version: str = ""
    phases: List[Phase]
    file_prerequisites: Dict[str, List[str]] = Field(default_factory=dict)  # planned file -> planned files it depends on
    blocked_artifacts: List[str] = Field(default_factory=list)
    fingerprint: str = ""

    def phase(self, number: int) -> Phase:
        for phase in self.phases:
            if phase.number == number:
                return phase
        raise KeyError(f"Plan has no phase {number}")

    def phase_of(self, file: str) -> Optional[int]:
        for phase in self.phases:
            if file in phase.files:
                return phase.number
        return None

    def actions_for(self, file: str) -> List[FileAction]:
        number = self.phase_of(file)
        if number is None:
            return []
        return [a for a in self.phase(number).actions if a.file == file]

    def all_files(self) -> List[str]:
        return [f for phase in self.phases for f in phase.files]


def compute_fingerprint(plan: MigrationPlan) -> str:
    return content_hash(plan.model_dump(mode="json", exclude={"fingerprint"}))


def default_order_key(path: str, in_degree: int) -> Any:
    """Ascending prerequisite count; path breaks ties afterwards."""
    return in_degree


@dataclass(frozen=True)
class PlanOptions:
    """Tunables for plan construction.

    ``order_key(path, in_degree)`` is the pluggable ordering hook; it must be
    a pure deterministic function. The path is always appended as the final
    tie-break.
    """
    high_risk_max_batch: int = 4
    high_density: float = 0.5
    order_key: Callable[[str, int], Any] = default_order_key


def planned_prerequisites(planned: Iterable[str], references: Mapping[str, Iterable[str]]) -> Dict[str, List[str]]:
    """Prerequisites of each planned file among the planned files.

    References through files that need no change are followed, so A -> X -> B
    still makes B a prerequisite of A when X itself is not planned.
    """
    planned_set = set(planned)
    result: Dict[str, List[str]] = {}
    for path in sorted(planned_set):
        found: Set[str] = set()
        seen = {path}
        stack = list(references.get(path, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            if node in planned_set:
                found.add(node)
                continue
            stack.extend(references.get(node, ()))
        result[path] = sorted(found)
    return result


def _changes(usage: FileUsage) -> List[FileAction]:
    grouped: Dict[ActionType, Dict[Tuple[int, str], SymbolChange]] = defaultdict(dict)
    for u in usage.usages:
        action = ACTION_FOR_USAGE[u.kind]
        if u.kind == UsageKind.SERVICE_FILE and u.line == 0:
            action = ActionType.RENAME_SERVICE_FILE
        grouped[action].setdefault((u.line, u.symbol), SymbolChange(
            line=u.line, symbol=u.symbol, before=u.legacy_form, after=u.successor_form,
        ))
    return [
        FileAction(file=usage.path, action_type=action, changes=[changes[k] for k in sorted(changes)])
        for action, changes in sorted(grouped.items(), key=lambda item: _ACTION_ORDER[item[0]])
    ]


def split_batches(units: List[List[str]], risk: RiskLevel, max_batch: int) -> List[List[str]]:
    """Group ordered units (single files or whole cycles) into batches.

    Default is one batch holding the whole phase. High risk halves the batch
    size repeatedly until it is at most max_batch (floor 1). A cycle is
    never split across batches.
    """
    total = sum(len(u) for u in units)
    if total == 0:
        return []
    size = total
    if risk == RiskLevel.HIGH:
        while size > max(1, max_batch):
            size = max(1, size // 2)
    batches: List[List[str]] = []
    current: List[str] = []
    for unit in units:
        if current and len(current) + len(unit) > size:
            batches.append(current)
            current = []
        current.extend(unit)
    if current:
        batches.append(current)
    return batches


def _assess_risk(files: List[str], blocked: Set[str], dynamic: Set[str], has_cycle: bool,
                 options: PlanOptions) -> Tuple[RiskLevel, List[str], float]:
    if not files:
        return RiskLevel.LOW, [], 0.0
    density = round(len([f for f in files if f in blocked]) / len(files), 4)
    factors: List[str] = []
    dynamic_files = [f for f in files if f in dynamic]
    if dynamic_files:
        factors.append(f"dynamic or reflective usage in {len(dynamic_files)} file(s)")
    if density > 0:
        factors.append(f"blocker density {density}")
    if has_cycle:
        factors.append("mutual dependency cycle")
    if dynamic_files or density >= options.high_density:
        return RiskLevel.HIGH, factors, density
    if density > 0 or has_cycle:
        return RiskLevel.MEDIUM, factors, density
    return RiskLevel.LOW, factors, density


def build_plan(
    graph: DependencyGraph,
    blockers: Iterable[Blocker],
    usages: Iterable[FileUsage],
    references: Optional[Mapping[str, Iterable[str]]] = None,
    recommendations: Iterable[Recommendation] = (),
    options: Optional[PlanOptions] = None,
    project_path: str = "",
    kb_version: str = "",
) -> MigrationPlan:
    """Combine graph, blockers and usage records into a MigrationPlan."""
    options = options or PlanOptions()
    references = references or {}
    blockers = list(blockers)
    usages = sorted(usages, key=lambda u: u.path)
    usage_by_path = {u.path: u for u in usages}
    blocked_artifacts = sorted({b.artifact for b in blockers})

    # Phase 1: manifests
    manifest_changes: Dict[str, Dict[Tuple[int, str], SymbolChange]] = defaultdict(dict)
    for rec in sorted(recommendations, key=lambda r: r.artifact):
        for site in rec.declared_in:
            manifest_changes[site.path].setdefault((site.line, rec.artifact), SymbolChange(
                line=site.line, symbol=rec.artifact, before=rec.current, after=rec.target,
            ))
    manifest_files = sorted(manifest_changes)
    blocked_manifests = {
        site.path for artifact in blocked_artifacts for site in graph.declared_in.get(artifact, [])
    }
    phase1_actions = [
        FileAction(
            file=path,
            action_type=ActionType.UPDATE_DEPENDENCY,
            changes=[manifest_changes[path][k] for k in sorted(manifest_changes[path])],
        )
        for path in manifest_files
    ]

    # Phases 2 and 3: sources, by prerequisite structure
    planned = [u.path for u in usages if u.file_kind == FileKind.SOURCE]
    prerequisites = planned_prerequisites(planned, references)
    in_degree = {p: len(deps) for p, deps in prerequisites.items()}
    zero = {p for p in planned if not prerequisites[p]}
    phase2_set = {p for p in planned if all(d in zero for d in prerequisites[p])}
    phase3_set = set(planned) - phase2_set

    def key(path: str) -> Tuple[Any, str]:
        return (options.order_key(path, in_degree[path]), path)

    phase2_units = [[p] for p in sorted(phase2_set, key=key)]

    components, levels = condensation_levels(phase3_set, prerequisites)
    cycles = sorted([c for c in components if len(c) > 1], key=lambda c: c[0])
    phase3_units: List[Tuple[Any, List[str]]] = []
    for component in components:
        head = component[0]
        external = {d for m in component for d in prerequisites[m] if d not in component}
        phase3_units.append(((levels[head], options.order_key(head, len(external)), head), component))
    phase3_units.sort(key=lambda item: item[0])

    # Phase 4: configuration, markup and tests
    phase4_files = sorted(u.path for u in usages if u.file_kind in (FileKind.CONFIG, FileKind.TEST))

    blocked_files = {u.path for u in usages if u.unmapped} | blocked_manifests
    dynamic_files = {u.path for u in usages if u.is_dynamic}

    unit_plan = {
        1: ([[f] for f in manifest_files], []),
        2: (phase2_units, []),
        3: ([unit for _, unit in phase3_units], cycles),
        4: ([[f] for f in phase4_files], []),
    }

    phases: List[Phase] = []
    for number in PHASE_NUMBERS:
        units, phase_cycles = unit_plan[number]
        files = [f for unit in units for f in unit]
        risk, factors, density = _assess_risk(files, blocked_files, dynamic_files, bool(phase_cycles), options)
        if number == 1:
            actions = phase1_actions
        else:
            actions = [a for f in files for a in _changes(usage_by_path[f])]
        phases.append(Phase(
            number=number,
            description=PHASE_DESCRIPTIONS[number],
            files=files,
            actions=actions,
            prerequisites=list(range(1, number)),
            risk=risk,
            risk_factors=factors,
            batches=split_batches(units, risk, options.high_risk_max_batch),
            cycles=phase_cycles,
            blocker_density=density,
        ))

    plan = MigrationPlan(
        project_path=project_path,
        kb_version=kb_version,
        phases=phases,
        file_prerequisites={p: deps for p, deps in prerequisites.items() if deps},
        blocked_artifacts=blocked_artifacts,
    )
    return plan.model_copy(update={"fingerprint": compute_fingerprint(plan)})


def ordering_violations(plan: MigrationPlan) -> List[Tuple[str, str]]:
    """(file, prerequisite) pairs where the prerequisite is scheduled in a later phase.

    Pairs inside the same cycle are exempt. An empty list means the plan
    respects dependency direction.
    """
    phase_of = {f: p.number for p in plan.phases for f in p.files}
    same_cycle = {
        (a, b) for p in plan.phases for cycle in p.cycles for a in cycle for b in cycle
    }
    violations = []
    for file, deps in sorted(plan.file_prerequisites.items()):
        for dep in deps:
            if (file, dep) in same_cycle:
                continue
            if phase_of.get(dep, 0) > phase_of.get(file, 0):
                violations.append((file, dep))
    return violations
