"""Build the artifact dependency graph of a project."""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from pydantic import BaseModel, Field

from jakartashift.kernel.artifact import (
    Artifact,
    DeclarationSite,
    Manifest,
    ManifestError,
)


ROOT_GROUP = "project"


class GraphSnapshot(BaseModel):
    """Serializable form of a DependencyGraph."""
    root: str
    nodes: List[Artifact]  # sorted by id
    edges: Dict[str, List[str]]  # node id -> sorted dependency ids
    modules: Dict[str, str] = Field(default_factory=dict)  # module node id -> manifest path
    declared_in: Dict[str, List[DeclarationSite]] = Field(default_factory=dict)
    errors: List[ManifestError] = Field(default_factory=list)
    partial: bool = False


class DependencyGraph:
    """Directed artifact graph (A depends on B) for one analysis run.

    A synthetic root node represents the project; every manifest adds a
    module node below the root and every declared dependency hangs off its
    module. Transitive edges only come from declared resolution data.
    The graph is built once in the constructor and never mutated afterwards.
    """

    def __init__(self, manifests: Iterable[Manifest], project_name: str = "project",
                 errors: Iterable[ManifestError] = ()):
        self.nodes: Dict[str, Artifact] = {}
        self.edges: Dict[str, Set[str]] = defaultdict(set)  # node -> set of dependencies
        self.reverse_edges: Dict[str, Set[str]] = defaultdict(set)  # dependency -> set of nodes that depend on it
        self.modules: Dict[str, str] = {}  # module node id -> manifest path
        self.declared_in: Dict[str, List[DeclarationSite]] = defaultdict(list)
        self.errors: List[ManifestError] = sorted(errors, key=lambda e: e.path)
        root = Artifact(group=ROOT_GROUP, name=project_name, scope="project")
        self.root = root.id
        self._add_node(root)
        self._build(sorted(manifests, key=lambda m: m.path))

    def _add_node(self, artifact: Artifact) -> str:
        node_id = artifact.id
        existing = self.nodes.get(node_id)
        # A direct declaration wins over the tree entry for scope reporting
        if existing is None or (existing.scope in ("runtime", "test") and artifact.scope == "compile"):
            self.nodes[node_id] = artifact
        self.edges.setdefault(node_id, set())
        return node_id

    def _add_edge(self, from_node: str, to_node: str) -> None:
        # Self-loops are dropped at insertion
        if from_node == to_node:
            return
        self.edges[from_node].add(to_node)
        self.reverse_edges[to_node].add(from_node)

    def _build(self, manifests: List[Manifest]) -> None:
        """Insert module nodes first so inter-module references resolve to them."""
        module_by_coordinate: Dict[str, str] = {}
        for manifest in manifests:
            module = manifest.module.model_copy(update={"scope": "module"})
            module_id = self._add_node(module)
            self.modules[module_id] = manifest.path
            module_by_coordinate.setdefault(module.coordinate, module_id)
            self._add_edge(self.root, module_id)

        def resolve(artifact: Artifact) -> str:
            module_id = module_by_coordinate.get(artifact.coordinate)
            if module_id is not None:
                return module_id
            return self._add_node(artifact)

        for manifest in manifests:
            module_id = module_by_coordinate[manifest.module.coordinate]
            for declared in manifest.dependencies:
                dep_id = resolve(declared.artifact)
                self._add_edge(module_id, dep_id)
                if dep_id not in self.modules:
                    self.declared_in[dep_id].append(
                        DeclarationSite(path=manifest.path, line=declared.line)
                    )
            for edge in manifest.transitive:
                parent_id = module_id if edge.parent.coordinate == manifest.module.coordinate else resolve(edge.parent)
                self._add_edge(parent_id, resolve(edge.child))

        for sites in self.declared_in.values():
            sites.sort(key=lambda s: (s.path, s.line))

    @property
    def is_partial(self) -> bool:
        return False

    def get_dependencies(self, node: str) -> Set[str]:
        """Get direct dependencies of a node."""
        return self.edges.get(node, set())

    def get_dependents(self, node: str) -> Set[str]:
        """Get nodes that depend on this node (reverse edges)."""
        return self.reverse_edges.get(node, set())

    def get_transitive_dependencies(self, node: str) -> Set[str]:
        """Get all transitive dependencies (recursive)."""
        visited = set()
        stack = [node]

        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for dep in self.get_dependencies(current):
                if dep not in visited:
                    stack.append(dep)

        visited.discard(node)  # Don't include the node itself
        return visited

    def get_dependency_path(self, from_node: str, to_node: str) -> List[str] | None:
        """Get the shortest depends-on path from from_node to to_node, or None."""
        if from_node == to_node:
            return [from_node]

        queue = [(from_node, [from_node])]
        visited = {from_node}

        while queue:
            current, path = queue.pop(0)

            for dep in sorted(self.get_dependencies(current)):  # Sort for deterministic paths
                if dep == to_node:
                    return path + [dep]

                if dep not in visited:
                    visited.add(dep)
                    queue.append((dep, path + [dep]))

        return None

    def is_structural(self, node: str) -> bool:
        """True for the synthetic root and module nodes."""
        return node == self.root or node in self.modules

    def artifact_ids(self) -> List[str]:
        """Sorted ids of every non-structural node."""
        return sorted(n for n in self.nodes if not self.is_structural(n))

    def is_direct(self, node: str) -> bool:
        """True when some module declares the node directly."""
        return any(parent in self.modules for parent in self.get_dependents(node))

    def versions_by_coordinate(self) -> Dict[str, List[str]]:
        """group:name -> sorted node ids, for coordinates present at more than one version."""
        grouped: Dict[str, List[str]] = defaultdict(list)
        for node_id in self.artifact_ids():
            grouped[self.nodes[node_id].coordinate].append(node_id)
        return {coord: ids for coord, ids in sorted(grouped.items()) if len(ids) > 1}

    def to_snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            root=self.root,
            nodes=[self.nodes[n] for n in sorted(self.nodes)],
            edges={n: sorted(self.edges.get(n, ())) for n in sorted(self.nodes)},
            modules=dict(sorted(self.modules.items())),
            declared_in={n: list(sites) for n, sites in sorted(self.declared_in.items())},
            errors=list(self.errors),
            partial=self.is_partial,
        )

    @classmethod
    def from_snapshot(cls, snapshot: GraphSnapshot) -> "DependencyGraph":
        """Rehydrate a graph without re-parsing manifests."""
        graph_cls = PartialGraph if snapshot.partial else DependencyGraph
        graph = graph_cls.__new__(graph_cls)
        graph.nodes = {a.id: a for a in snapshot.nodes}
        graph.edges = defaultdict(set)
        graph.reverse_edges = defaultdict(set)
        for node_id in graph.nodes:
            graph.edges.setdefault(node_id, set())
        for node_id, deps in snapshot.edges.items():
            for dep in deps:
                graph._add_edge(node_id, dep)
        graph.modules = dict(snapshot.modules)
        graph.declared_in = defaultdict(list, {k: list(v) for k, v in snapshot.declared_in.items()})
        graph.errors = list(snapshot.errors)
        graph.root = snapshot.root
        return graph


class PartialGraph(DependencyGraph):
    """Graph built while one or more manifests failed to parse.

    Carries one ManifestError per offending file in ``errors``; every
    manifest that did parse is still represented.
    """

    @property
    def is_partial(self) -> bool:
        return True


def build_graph(manifests: Iterable[Manifest], project_name: str = "project",
                errors: Iterable[ManifestError] = ()) -> DependencyGraph:
    """Build a DependencyGraph, or a PartialGraph when any manifest failed."""
    errors = list(errors)
    graph_cls = PartialGraph if errors else DependencyGraph
    return graph_cls(manifests, project_name=project_name, errors=errors)


def strongly_connected_components(
    nodes: Iterable[str], edges: Mapping[str, Iterable[str]]
) -> List[List[str]]:
    """Tarjan's algorithm, iterative.

    Returns components with members sorted lexically, in reverse topological
    order: a component appears after every component it depends on. Node and
    edge iteration is sorted for determinism.
    """
    index_of: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for start in sorted(nodes):
        if start in index_of:
            continue
        work: List[Tuple[str, Iterable[str]]] = [(start, iter(sorted(edges.get(start, ()))))]
        index_of[start] = lowlink[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)

        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(edges.get(child, ())))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))

    return components


def find_cycles(nodes: Iterable[str], edges: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Components with more than one member, sorted by their first member."""
    cycles = [c for c in strongly_connected_components(nodes, edges) if len(c) > 1]
    return sorted(cycles, key=lambda c: c[0])


def condensation_levels(
    nodes: Iterable[str], edges: Mapping[str, Iterable[str]]
) -> Tuple[List[List[str]], Dict[str, int]]:
    """Level every strongly connected component topologically.

    A component's level is 0 when it depends on nothing inside ``nodes``,
    otherwise one more than the highest level among its dependencies.
    Returns the components and a node -> level map.
    """
    node_set = set(nodes)
    inner = {n: [d for d in edges.get(n, ()) if d in node_set] for n in node_set}
    components = strongly_connected_components(node_set, inner)
    component_of = {member: i for i, comp in enumerate(components) for member in comp}
    level_of_component: Dict[int, int] = {}
    # Tarjan emits dependencies before dependents, so one pass suffices
    for i, comp in enumerate(components):
        level = 0
        for member in comp:
            for dep in inner[member]:
                dep_comp = component_of[dep]
                if dep_comp != i:
                    level = max(level, level_of_component[dep_comp] + 1)
        level_of_component[i] = level
    levels = {member: level_of_component[component_of[member]] for member in node_set}
    return components, levels
