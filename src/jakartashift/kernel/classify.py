"""Namespace classification, blocker detection and upgrade recommendations.

Every function here is a pure function of the graph and the knowledge base.
Classification precedence (first match wins):

1. family rule     - coordinate matches a framework family and the version
                     parses; at or above min_version the framework already
                     uses the successor namespace whatever its coordinate says
2. exact entry     - coordinate is a legacy or successor coordinate in the KB
3. prefix          - group or name literally starts with a namespace prefix
4. unknown

Tiers 1-2 carry confidence 0.95, tier 3 carries 0.6, tier 4 carries 0.0.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from jakartashift.codes import BlockerKind, CompatibilityLevel, MatchTier, NamespaceState
from jakartashift.kernel.artifact import Artifact, DeclarationSite, major_version, version_at_least
from jakartashift.kernel.graph import DependencyGraph
from jakartashift.kernel.knowledge import KnowledgeBase


TIER_CONFIDENCE = {
    MatchTier.FAMILY_RULE: 0.95,
    MatchTier.EXACT: 0.95,
    MatchTier.PREFIX: 0.6,
    MatchTier.UNKNOWN: 0.0,
}


class Classification(BaseModel):
    """Namespace state of one artifact and the rule that decided it."""
    artifact: str  # node id
    state: NamespaceState
    tier: MatchTier
    confidence: float
    reason: str
    entry: Optional[str] = None  # legacy coordinate of the matched KB entry
    family: Optional[str] = None  # matched family glob


class Blocker(BaseModel):
    """A detected obstacle preventing migration of a specific artifact."""
    artifact: str
    kind: BlockerKind
    reason: str
    mitigations: List[str] = Field(default_factory=list)
    confidence: float

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {v}")
        return v


class Recommendation(BaseModel):
    """A concrete coordinate change for one legacy artifact."""
    artifact: str
    current: str  # group:name:version as declared
    target: str  # group:name:version to declare instead
    kind: str  # "replace" (KB entry) | "upgrade" (family rule)
    compatibility: CompatibilityLevel
    breaking_changes: List[str] = Field(default_factory=list)
    reason: str
    declared_in: List[DeclarationSite] = Field(default_factory=list)


def classify(artifact: Artifact, kb: KnowledgeBase) -> Classification:
    """Classify one artifact against the knowledge base."""
    coordinate = artifact.coordinate

    rule = kb.find_family_rule(coordinate)
    if rule is not None:
        at_least = version_at_least(artifact.version, rule.min_version)
        if at_least is True:
            return Classification(
                artifact=artifact.id,
                state=NamespaceState.SUCCESSOR,
                tier=MatchTier.FAMILY_RULE,
                confidence=TIER_CONFIDENCE[MatchTier.FAMILY_RULE],
                reason=f"{coordinate} {artifact.version} >= {rule.min_version}: {rule.description}".rstrip(": "),
                family=rule.family,
            )
        if at_least is False:
            return Classification(
                artifact=artifact.id,
                state=NamespaceState.LEGACY,
                tier=MatchTier.FAMILY_RULE,
                confidence=TIER_CONFIDENCE[MatchTier.FAMILY_RULE],
                reason=f"{coordinate} {artifact.version} predates {rule.min_version}: {rule.description}".rstrip(": "),
                family=rule.family,
            )
        # Unparseable version: the family cannot decide, fall through

    entry = kb.lookup_legacy(coordinate)
    if entry is not None:
        return Classification(
            artifact=artifact.id,
            state=NamespaceState.LEGACY,
            tier=MatchTier.EXACT,
            confidence=TIER_CONFIDENCE[MatchTier.EXACT],
            reason=f"{coordinate} is a legacy coordinate replaced by {entry.successor}",
            entry=entry.legacy,
        )
    entry = kb.lookup_successor(coordinate)
    if entry is not None:
        return Classification(
            artifact=artifact.id,
            state=NamespaceState.SUCCESSOR,
            tier=MatchTier.EXACT,
            confidence=TIER_CONFIDENCE[MatchTier.EXACT],
            reason=f"{coordinate} is the successor of {entry.legacy}",
            entry=entry.legacy,
        )

    if kb.has_legacy_prefix(artifact.group, artifact.name):
        return Classification(
            artifact=artifact.id,
            state=NamespaceState.LEGACY,
            tier=MatchTier.PREFIX,
            confidence=TIER_CONFIDENCE[MatchTier.PREFIX],
            reason=f"{coordinate} uses a legacy namespace prefix",
        )
    if kb.has_successor_prefix(artifact.group, artifact.name):
        return Classification(
            artifact=artifact.id,
            state=NamespaceState.SUCCESSOR,
            tier=MatchTier.PREFIX,
            confidence=TIER_CONFIDENCE[MatchTier.PREFIX],
            reason=f"{coordinate} uses a successor namespace prefix",
        )

    return Classification(
        artifact=artifact.id,
        state=NamespaceState.UNKNOWN,
        tier=MatchTier.UNKNOWN,
        confidence=TIER_CONFIDENCE[MatchTier.UNKNOWN],
        reason=f"{coordinate} matches no rule",
    )


def aggregate_state(states: Iterable[NamespaceState]) -> NamespaceState:
    """Combine the states of several artifacts into one."""
    seen = set(states)
    if NamespaceState.MIXED in seen:
        return NamespaceState.MIXED
    if NamespaceState.LEGACY in seen and NamespaceState.SUCCESSOR in seen:
        return NamespaceState.MIXED
    if NamespaceState.LEGACY in seen:
        return NamespaceState.LEGACY
    if NamespaceState.SUCCESSOR in seen:
        return NamespaceState.SUCCESSOR
    return NamespaceState.UNKNOWN


def classify_graph(graph: DependencyGraph, kb: KnowledgeBase) -> Dict[str, Classification]:
    """Classify every node of the graph.

    A non-structural artifact whose direct dependencies include both legacy
    and successor artifacts becomes ``mixed``. Module and root nodes take
    the aggregate state of their direct dependencies.
    """
    result: Dict[str, Classification] = {}
    for node_id in graph.artifact_ids():
        result[node_id] = classify(graph.nodes[node_id], kb)

    base = dict(result)
    for node_id in graph.artifact_ids():
        dep_states = {base[d].state for d in graph.get_dependencies(node_id) if d in base}
        if NamespaceState.LEGACY in dep_states and NamespaceState.SUCCESSOR in dep_states:
            result[node_id] = result[node_id].model_copy(update={
                "state": NamespaceState.MIXED,
                "reason": f"{graph.nodes[node_id].coordinate} depends on both legacy and successor artifacts",
            })

    module_ids = set(graph.modules)
    # Modules can depend on modules; classify leaf modules first
    ordered = sorted(module_ids, key=lambda m: (len(graph.get_transitive_dependencies(m) & module_ids), m))
    for node_id in ordered + [graph.root]:
        states = [result[d].state for d in sorted(graph.get_dependencies(node_id)) if d in result]
        state = aggregate_state(states)
        result[node_id] = Classification(
            artifact=node_id,
            state=state,
            tier=MatchTier.UNKNOWN,
            confidence=TIER_CONFIDENCE[MatchTier.UNKNOWN],
            reason=f"aggregate of {len(states)} direct dependencies",
        )
    return dict(sorted(result.items()))


def classified_artifacts(graph: DependencyGraph, classifications: Dict[str, Classification]) -> List[Artifact]:
    """Copies of the graph's artifacts carrying their classified state."""
    return [
        graph.nodes[node_id].with_state(classifications[node_id].state)
        for node_id in sorted(graph.nodes)
        if node_id in classifications
    ]


def _conflict_confidence(a: Classification, b: Classification) -> float:
    known = [c.confidence for c in (a, b) if c.tier in (MatchTier.FAMILY_RULE, MatchTier.EXACT)]
    if known:
        return max(known)
    return TIER_CONFIDENCE[MatchTier.PREFIX]


def detect_blockers(
    graph: DependencyGraph, classifications: Dict[str, Classification], kb: KnowledgeBase
) -> List[Blocker]:
    """Static blockers: no-equivalent and transitive-conflict.

    binary-incompatible blockers are never inferred here; they come from
    runtime findings.
    """
    blockers: List[Blocker] = []

    for node_id in graph.artifact_ids():
        c = classifications[node_id]
        artifact = graph.nodes[node_id]
        if c.state == NamespaceState.LEGACY and c.tier == MatchTier.PREFIX:
            blockers.append(Blocker(
                artifact=node_id,
                kind=BlockerKind.NO_EQUIVALENT,
                reason=f"{artifact.coordinate} uses the legacy namespace and has no known successor",
                mitigations=[
                    f"Check whether a successor release of {artifact.coordinate} exists and add it to the knowledge base",
                    f"Replace {artifact.coordinate} with an alternative library that supports the successor namespace",
                    f"Isolate code that depends on {artifact.coordinate} behind an adapter until it can be replaced",
                ],
                confidence=c.confidence,
            ))

    for coordinate, node_ids in graph.versions_by_coordinate().items():
        direct = [n for n in node_ids if graph.is_direct(n)]
        pinned = [n for n in node_ids if n not in direct]
        for t in pinned:
            for d in direct:
                ct, cd = classifications[t], classifications[d]
                major_t = major_version(graph.nodes[t].version)
                major_d = major_version(graph.nodes[d].version)
                different_major = major_t is not None and major_d is not None and major_t != major_d
                if not different_major and ct.state == cd.state:
                    continue
                parents = sorted(p for p in graph.get_dependents(t) if not graph.is_structural(p))
                via = f" via {', '.join(parents)}" if parents else ""
                blockers.append(Blocker(
                    artifact=t,
                    kind=BlockerKind.TRANSITIVE_CONFLICT,
                    reason=(
                        f"{coordinate} is pinned transitively at {graph.nodes[t].version}{via} "
                        f"({ct.state.value}) while a direct dependency declares "
                        f"{graph.nodes[d].version} ({cd.state.value})"
                    ),
                    mitigations=[
                        f"Align {coordinate} to {graph.nodes[d].version} with dependencyManagement or a dependency constraint",
                        f"Exclude {coordinate} from the transitive path{via}",
                    ],
                    confidence=_conflict_confidence(ct, cd),
                ))

    for node_id in graph.artifact_ids():
        c = classifications[node_id]
        if c.state != NamespaceState.MIXED:
            continue
        deps = sorted(graph.get_dependencies(node_id))
        legacy = [d for d in deps if classifications[d].state == NamespaceState.LEGACY]
        successor = [d for d in deps if classifications[d].state == NamespaceState.SUCCESSOR]
        involved = [classifications[d].confidence for d in legacy + successor]
        blockers.append(Blocker(
            artifact=node_id,
            kind=BlockerKind.TRANSITIVE_CONFLICT,
            reason=(
                f"{graph.nodes[node_id].coordinate} requires legacy ({', '.join(legacy)}) "
                f"and successor ({', '.join(successor)}) artifacts at the same time"
            ),
            mitigations=[
                f"Upgrade {graph.nodes[node_id].coordinate} to a release built entirely on the successor namespace",
                "Exclude the legacy transitive dependencies and add their successors explicitly",
            ],
            confidence=min(involved) if involved else TIER_CONFIDENCE[MatchTier.PREFIX],
        ))

    return sorted(blockers, key=lambda b: (b.artifact, b.kind.value, b.reason))


def recommend(
    graph: DependencyGraph, classifications: Dict[str, Classification], kb: KnowledgeBase
) -> List[Recommendation]:
    """One recommendation per legacy artifact that has a known target."""
    recommendations: List[Recommendation] = []
    for node_id in graph.artifact_ids():
        c = classifications[node_id]
        if c.state != NamespaceState.LEGACY:
            continue
        artifact = graph.nodes[node_id]
        sites = list(graph.declared_in.get(node_id, []))

        if c.tier == MatchTier.EXACT and c.entry is not None:
            entry = kb.lookup_legacy(c.entry)
            version = entry.successor_version(artifact.version)
            target = f"{entry.successor}:{version}" if version else entry.successor
            recommendations.append(Recommendation(
                artifact=node_id,
                current=artifact.id,
                target=target,
                kind="replace",
                compatibility=entry.compatibility,
                breaking_changes=list(entry.breaking_changes),
                reason=f"Replace {artifact.coordinate} with {entry.successor}",
                declared_in=sites,
            ))
        elif c.tier == MatchTier.FAMILY_RULE and c.family is not None:
            rule = kb.find_family_rule(artifact.coordinate)
            version = rule.recommended_version or rule.min_version
            recommendations.append(Recommendation(
                artifact=node_id,
                current=artifact.id,
                target=f"{artifact.coordinate}:{version}",
                kind="upgrade",
                compatibility=CompatibilityLevel.MAJOR_REFACTOR,
                breaking_changes=[rule.description] if rule.description else [],
                reason=f"Upgrade {artifact.coordinate} to {version} or later (family {rule.family})",
                declared_in=sites,
            ))
    return recommendations


def blockers_by_artifact(blockers: Iterable[Blocker]) -> Dict[str, List[Blocker]]:
    grouped: Dict[str, List[Blocker]] = defaultdict(list)
    for blocker in blockers:
        grouped[blocker.artifact].append(blocker)
    return dict(grouped)
