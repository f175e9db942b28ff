"""Tests for graph.py."""

from jakartashift.kernel.artifact import (
    Artifact,
    DeclaredDependency,
    Manifest,
    ManifestError,
    TransitiveEdge,
)
from jakartashift.kernel.graph import (
    DependencyGraph,
    PartialGraph,
    build_graph,
    condensation_levels,
    find_cycles,
    strongly_connected_components,
)


def _art(coord: str, scope: str = "compile") -> Artifact:
    group, name, version = coord.split(":")
    return Artifact(group=group, name=name, version=version, scope=scope)


def _manifest(path: str, module: str, deps=(), transitive=()) -> Manifest:
    return Manifest(
        path=path,
        kind="maven",
        module=_art(module, "module"),
        dependencies=[DeclaredDependency(artifact=_art(d), line=i + 1) for i, d in enumerate(deps)],
        transitive=[TransitiveEdge(parent=_art(p), child=_art(c)) for p, c in transitive],
    )


def test_build_graph():
    """Root -> module -> declared dependency, with declaration sites."""
    manifest = _manifest("pom.xml", "com.acme:app:1.0", ["javax.servlet:javax.servlet-api:4.0.1"])
    graph = DependencyGraph([manifest], project_name="demo")

    assert graph.root == "project:demo"
    assert graph.get_dependencies("project:demo") == {"com.acme:app:1.0"}
    assert graph.get_dependencies("com.acme:app:1.0") == {"javax.servlet:javax.servlet-api:4.0.1"}
    assert graph.get_dependents("javax.servlet:javax.servlet-api:4.0.1") == {"com.acme:app:1.0"}
    assert graph.modules == {"com.acme:app:1.0": "pom.xml"}
    assert graph.artifact_ids() == ["javax.servlet:javax.servlet-api:4.0.1"]
    [site] = graph.declared_in["javax.servlet:javax.servlet-api:4.0.1"]
    assert (site.path, site.line) == ("pom.xml", 1)
    assert not graph.is_partial


def test_inter_module_dependency_resolves_to_module_node():
    api = _manifest("api/pom.xml", "com.acme:api:1.0")
    web = _manifest("web/pom.xml", "com.acme:web:1.0", ["com.acme:api:1.0"])
    graph = DependencyGraph([web, api])

    assert graph.get_dependencies("com.acme:web:1.0") == {"com.acme:api:1.0"}
    assert graph.is_structural("com.acme:api:1.0")
    # Module-to-module edges are not declaration sites of artifacts
    assert "com.acme:api:1.0" not in graph.declared_in


def test_transitive_dependencies():
    """Transitive edges come from the declared tree."""
    manifest = _manifest(
        "pom.xml",
        "com.acme:app:1.0",
        ["org.hibernate:hibernate-core:5.6.15"],
        transitive=[
            ("com.acme:app:1.0", "org.hibernate:hibernate-core:5.6.15"),
            ("org.hibernate:hibernate-core:5.6.15", "javax.persistence:javax.persistence-api:2.2"),
        ],
    )
    graph = DependencyGraph([manifest])

    assert graph.get_transitive_dependencies("com.acme:app:1.0") == {
        "org.hibernate:hibernate-core:5.6.15",
        "javax.persistence:javax.persistence-api:2.2",
    }
    assert not graph.is_direct("javax.persistence:javax.persistence-api:2.2")
    assert graph.is_direct("org.hibernate:hibernate-core:5.6.15")
    assert graph.get_dependency_path("com.acme:app:1.0", "javax.persistence:javax.persistence-api:2.2") == [
        "com.acme:app:1.0",
        "org.hibernate:hibernate-core:5.6.15",
        "javax.persistence:javax.persistence-api:2.2",
    ]


def test_self_loop_is_dropped():
    manifest = _manifest(
        "pom.xml", "com.acme:app:1.0", ["a:b:1"], transitive=[("a:b:1", "a:b:1")]
    )
    graph = DependencyGraph([manifest])
    assert graph.get_dependencies("a:b:1") == set()


def test_versions_by_coordinate():
    manifest = _manifest(
        "pom.xml", "com.acme:app:1.0", ["a:b:1", "a:b:2", "c:d:1"]
    )
    graph = DependencyGraph([manifest])
    assert graph.versions_by_coordinate() == {"a:b": ["a:b:1", "a:b:2"]}


def test_partial_graph_keeps_parsed_manifests():
    good = _manifest("good/pom.xml", "com.acme:good:1.0", ["a:b:1"])
    error = ManifestError(path="bad/pom.xml", message="malformed XML")
    graph = build_graph([good], errors=[error])

    assert isinstance(graph, PartialGraph)
    assert graph.is_partial
    assert graph.errors == [error]
    assert "a:b:1" in graph.nodes


def test_snapshot_roundtrip():
    manifest = _manifest("pom.xml", "com.acme:app:1.0", ["a:b:1"], transitive=[("a:b:1", "c:d:2")])
    graph = build_graph([manifest], "demo", [ManifestError(path="x/pom.xml", message="bad")])

    snapshot = graph.to_snapshot()
    restored = DependencyGraph.from_snapshot(snapshot)

    assert isinstance(restored, PartialGraph)
    assert restored.to_snapshot() == snapshot
    assert restored.get_dependents("c:d:2") == {"a:b:1"}


def test_strongly_connected_components_order():
    edges = {"a": ["b"], "b": ["c"], "c": ["b"], "d": []}
    components = strongly_connected_components(["a", "b", "c", "d"], edges)

    assert ["b", "c"] in components
    # Dependencies come before dependents
    assert components.index(["b", "c"]) < components.index(["a"])
    assert find_cycles(["a", "b", "c", "d"], edges) == [["b", "c"]]


def test_condensation_levels():
    edges = {"a": ["b"], "b": ["c"], "c": ["b", "d"], "d": [], "e": ["outside"]}
    _, levels = condensation_levels(["a", "b", "c", "d", "e"], edges)

    assert levels == {"d": 0, "e": 0, "b": 1, "c": 1, "a": 2}
