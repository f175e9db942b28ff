"""Build manifest parsing (internal).

Supported inputs:
- Maven ``pom.xml`` (properties, parent inheritance, dependencyManagement, plugins, modules)
- Gradle ``build.gradle`` / ``build.gradle.kts`` (string and map notation, plugins block,
  ext/val/def variables, gradle.properties, settings include)
- ``dependency-tree.txt`` next to a manifest: saved ``mvn dependency:tree`` output,
  the only source of transitive edges (the engine never resolves over the network)
"""

import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from jakartashift.exceptions import ManifestParseError
from jakartashift.kernel.artifact import (
    Artifact,
    DeclaredDependency,
    Manifest,
    ManifestError,
    TransitiveEdge,
)

logger = logging.getLogger(__name__)

MAVEN_MANIFEST = "pom.xml"
GRADLE_MANIFESTS = {"build.gradle": "gradle", "build.gradle.kts": "gradle-kts"}
GRADLE_SETTINGS = ("settings.gradle", "settings.gradle.kts")
DEPENDENCY_TREE_FILES = ("dependency-tree.txt",)

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


@dataclass
class MavenContext:
    """What a child pom inherits from its parent."""
    group: str = ""
    version: str = ""
    properties: Dict[str, str] = field(default_factory=dict)
    managed: Dict[str, str] = field(default_factory=dict)  # group:name -> version


@dataclass
class ManifestSet:
    """Result of loading every manifest under a project root."""
    project_name: str
    manifests: List[Manifest] = field(default_factory=list)
    errors: List[ManifestError] = field(default_factory=list)


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


# ---------------------------------------------------------------------------
# Maven
# ---------------------------------------------------------------------------

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if element is None:
        return None
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _children(element: Optional[ET.Element], name: str) -> List[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local(child.tag) == name]


def _text(element: Optional[ET.Element], name: str) -> str:
    child = _child(element, name)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def resolve_placeholders(value: str, properties: Dict[str, str], max_depth: int = 10) -> str:
    """Expand ${...} references; unknown references are left in place."""
    for _ in range(max_depth):
        expanded = _PLACEHOLDER.sub(lambda m: properties.get(m.group(1), m.group(0)), value)
        if expanded == value:
            break
        value = expanded
    return value


def _declaration_offsets(text: str, name: str, skip_spans: List[Tuple[int, int]]) -> List[int]:
    pattern = re.compile(r"<artifactId>\s*" + re.escape(name) + r"\s*</artifactId>")
    return [
        m.start() for m in pattern.finditer(text)
        if not any(start <= m.start() < end for start, end in skip_spans)
    ]


def parse_pom(text: str, path: str, parent: Optional[MavenContext] = None) -> Tuple[Manifest, MavenContext]:
    """Parse one pom.xml.

    Raises:
        ManifestParseError: malformed XML or missing artifactId.
    """
    try:
        project = ET.fromstring(text)
    except ET.ParseError as e:
        raise ManifestParseError(path, f"malformed XML: {e}") from e
    if _local(project.tag) != "project":
        raise ManifestParseError(path, f"root element is <{_local(project.tag)}>, expected <project>")

    parent_ctx = parent or MavenContext()
    parent_el = _child(project, "parent")
    artifact_id = _text(project, "artifactId")
    if not artifact_id:
        raise ManifestParseError(path, "missing <artifactId>")
    group = _text(project, "groupId") or _text(parent_el, "groupId") or parent_ctx.group
    parent_version = _text(parent_el, "version") or parent_ctx.version

    properties = dict(parent_ctx.properties)
    props_el = _child(project, "properties")
    for prop in (list(props_el) if props_el is not None else []):
        properties[_local(prop.tag)] = (prop.text or "").strip()
    version = _text(project, "version") or parent_version
    properties.update({
        "project.groupId": group,
        "project.artifactId": artifact_id,
        "project.parent.version": parent_version,
        "pom.groupId": group,
        "pom.artifactId": artifact_id,
    })
    version = resolve_placeholders(version, properties)
    properties["project.version"] = version
    properties["pom.version"] = version
    group = resolve_placeholders(group, properties)

    managed = dict(parent_ctx.managed)
    management = _child(_child(project, "dependencyManagement"), "dependencies")
    for dep in _children(management, "dependency"):
        g = resolve_placeholders(_text(dep, "groupId"), properties)
        a = resolve_placeholders(_text(dep, "artifactId"), properties)
        v = resolve_placeholders(_text(dep, "version"), properties)
        if g and a and v:
            managed[f"{g}:{a}"] = v

    skip_spans = [m.span() for m in re.finditer(r"<dependencyManagement>.*?</dependencyManagement>", text, re.S)]
    skip_spans += [m.span() for m in re.finditer(r"<pluginManagement>.*?</pluginManagement>", text, re.S)]
    used_offsets: set = set()

    def site(name: str) -> int:
        for offset in _declaration_offsets(text, name, skip_spans):
            if offset not in used_offsets:
                used_offsets.add(offset)
                return _line_of(text, offset)
        return 0

    dependencies: List[DeclaredDependency] = []
    unresolved: List[str] = []
    if parent_el is not None and parent is None:
        # A parent outside the project (e.g. spring-boot-starter-parent) is a real dependency
        parent_group = _text(parent_el, "groupId")
        parent_name = _text(parent_el, "artifactId")
        if parent_group and parent_name:
            dependencies.append(DeclaredDependency(
                artifact=Artifact(group=parent_group, name=parent_name, version=parent_version, scope="parent"),
                line=site(parent_name),
            ))
    for dep in _children(_child(project, "dependencies"), "dependency"):
        g = resolve_placeholders(_text(dep, "groupId"), properties)
        a = resolve_placeholders(_text(dep, "artifactId"), properties)
        if not g or not a:
            raise ManifestParseError(path, "<dependency> without groupId or artifactId")
        v = resolve_placeholders(_text(dep, "version"), properties)
        is_managed = False
        if not v and f"{g}:{a}" in managed:
            v, is_managed = managed[f"{g}:{a}"], True
        if not v or "${" in v:
            unresolved.append(f"{g}:{a}")
        dependencies.append(DeclaredDependency(
            artifact=Artifact(group=g, name=a, version=v, scope=_text(dep, "scope") or "compile"),
            line=site(a),
            managed=is_managed,
        ))

    plugins = _child(_child(project, "build"), "plugins")
    for plugin in _children(plugins, "plugin"):
        g = resolve_placeholders(_text(plugin, "groupId") or "org.apache.maven.plugins", properties)
        a = resolve_placeholders(_text(plugin, "artifactId"), properties)
        v = resolve_placeholders(_text(plugin, "version"), properties)
        if not a or not v or "${" in v:
            continue
        dependencies.append(DeclaredDependency(
            artifact=Artifact(group=g, name=a, version=v, scope="plugin"),
            line=site(a),
        ))

    modules = [m.text.strip() for m in _children(_child(project, "modules"), "module") if m.text]

    manifest = Manifest(
        path=path,
        kind="maven",
        module=Artifact(group=group, name=artifact_id, version=version, scope="module"),
        dependencies=dependencies,
        modules=modules,
        unresolved=sorted(set(unresolved)),
    )
    return manifest, MavenContext(group=group, version=version, properties=properties, managed=managed)


# ---------------------------------------------------------------------------
# Gradle
# ---------------------------------------------------------------------------

GRADLE_SCOPES = {
    "implementation": "compile",
    "api": "compile",
    "compile": "compile",
    "compileOnly": "provided",
    "providedCompile": "provided",
    "annotationProcessor": "provided",
    "kapt": "provided",
    "runtimeOnly": "runtime",
    "runtime": "runtime",
    "providedRuntime": "runtime",
    "testImplementation": "test",
    "testCompileOnly": "test",
    "testRuntimeOnly": "test",
    "testCompile": "test",
    "testRuntime": "test",
}
_CONFIGS = "|".join(sorted(GRADLE_SCOPES, key=len, reverse=True))
_GRADLE_STRING_DEP = re.compile(
    r"^\s*(" + _CONFIGS + r")\s*\(?\s*(?:(?:enforcedPlatform|platform)\s*\(\s*)?['\"]([^'\"]+)['\"]"
)
_GRADLE_MAP_DEP = re.compile(
    r"^\s*(" + _CONFIGS + r")\s*\(?\s*group\s*[:=]\s*['\"]([^'\"]+)['\"]\s*,\s*name\s*[:=]\s*['\"]([^'\"]+)['\"]"
    r"(?:\s*,\s*version\s*[:=]\s*['\"]([^'\"]+)['\"])?"
)
_GRADLE_PLUGIN = re.compile(r"^\s*id\s*\(?\s*['\"]([\w.\-]+)['\"]\s*\)?\s*version\s*\(?\s*['\"]([^'\"]+)['\"]")
_GRADLE_VARIABLE = re.compile(
    r"^\s*(?:ext\.|project\.ext\.|def\s+|val\s+|var\s+|extra\[)?['\"]?(\w[\w.]*)['\"]?\]?\s*=\s*['\"]([^'\"]*)['\"]"
)
_GRADLE_SET_VARIABLE = re.compile(r"set\(\s*['\"](\w[\w.]*)['\"]\s*,\s*['\"]([^'\"]*)['\"]\s*\)")
_GRADLE_INTERPOLATION = re.compile(r"\$\{?([\w.]+)\}?")
_STRING_LITERAL = re.compile(r"'(?:\\.|[^'\\\n])*'|\"(?:\\.|[^\"\\\n])*\"")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.S)
_LINE_COMMENT = re.compile(r"//[^\n]*")


def parse_properties_file(text: str) -> Dict[str, str]:
    """Parse a gradle.properties / .properties file (key=value or key: value)."""
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", "!")):
            continue
        match = re.match(r"([^=:\s]+)\s*[=:]\s*(.*)", line)
        if match:
            values[match.group(1)] = match.group(2).strip()
    return values


def _check_braces(text: str, path: str) -> None:
    code = _BLOCK_COMMENT.sub(lambda m: "\n" * m.group(0).count("\n"), text)
    code = _LINE_COMMENT.sub("", _STRING_LITERAL.sub("''", code))
    depth = 0
    for offset, char in enumerate(code):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                raise ManifestParseError(path, f"unexpected '}}' at line {_line_of(code, offset)}")
    if depth != 0:
        raise ManifestParseError(path, f"{depth} unclosed '{{' block(s)")


def _interpolate(value: str, variables: Dict[str, str]) -> str:
    return _GRADLE_INTERPOLATION.sub(lambda m: variables.get(m.group(1), m.group(0)), value)


def parse_gradle(text: str, path: str, kind: str, module_name: str,
                 inherited: Optional[Dict[str, str]] = None) -> Manifest:
    """Parse one Gradle build script (Groovy or Kotlin DSL).

    Raises:
        ManifestParseError: unbalanced blocks.
    """
    _check_braces(text, path)
    variables = dict(inherited or {})
    lines = text.splitlines()
    for line in lines:
        match = _GRADLE_VARIABLE.match(line)
        if match:
            variables[match.group(1)] = match.group(2)
        for match in _GRADLE_SET_VARIABLE.finditer(line):
            variables[match.group(1)] = match.group(2)

    dependencies: List[DeclaredDependency] = []
    unresolved: List[str] = []
    for number, line in enumerate(lines, start=1):
        plugin = _GRADLE_PLUGIN.match(line)
        if plugin:
            plugin_id = plugin.group(1)
            dependencies.append(DeclaredDependency(
                artifact=Artifact(
                    group=plugin_id,
                    name=f"{plugin_id}.gradle.plugin",
                    version=_interpolate(plugin.group(2), variables),
                    scope="plugin",
                ),
                line=number,
            ))
            continue

        map_dep = _GRADLE_MAP_DEP.match(line)
        if map_dep:
            config, g, a, v = map_dep.groups()
            parts = [_interpolate(g, variables), _interpolate(a, variables), _interpolate(v or "", variables)]
        else:
            string_dep = _GRADLE_STRING_DEP.match(line)
            if not string_dep:
                continue
            config, notation = string_dep.groups()
            notation = _interpolate(notation, variables).split("@", 1)[0]
            parts = notation.split(":")
            if len(parts) < 2:
                continue
            parts = (parts + [""])[:3]
        g, a, v = parts
        if not v or "$" in v:
            unresolved.append(f"{g}:{a}")
        dependencies.append(DeclaredDependency(
            artifact=Artifact(group=g, name=a, version=v, scope=GRADLE_SCOPES[config]),
            line=number,
        ))

    module = Artifact(
        group=variables.get("group", ""),
        name=module_name,
        version=variables.get("version", ""),
        scope="module",
    )
    return Manifest(
        path=path,
        kind=kind,
        module=module,
        dependencies=dependencies,
        unresolved=sorted(set(unresolved)),
    )


def parse_gradle_settings(text: str) -> Tuple[Optional[str], List[str]]:
    """Return (rootProject.name, included module directories) from a settings script."""
    root_name = None
    match = re.search(r"rootProject\.name\s*=\s*['\"]([^'\"]+)['\"]", text)
    if match:
        root_name = match.group(1)
    modules: List[str] = []
    for include in re.finditer(r"^\s*include\s*\(?(.*)$", text, re.M):
        for quoted in re.findall(r"['\"]([^'\"]+)['\"]", include.group(1)):
            modules.append(quoted.strip(":").replace(":", "/"))
    return root_name, modules


# ---------------------------------------------------------------------------
# Declared dependency trees
# ---------------------------------------------------------------------------

_TREE_LINE = re.compile(r"^(?P<prefix>[\s|+\\`-]*)(?P<coord>[\w.\-]+(?::[\w.\-]+){3,5})(?=\s|$)")
_LOG_PREFIX = re.compile(r"^\[\w+\]\s?")


def _tree_artifact(coordinate: str, path: str, number: int) -> Artifact:
    parts = coordinate.split(":")
    if len(parts) == 4:
        g, a, _, v = parts
        scope = "compile"
    elif len(parts) == 5:
        g, a, _, v, scope = parts
    elif len(parts) == 6:
        g, a, _, _, v, scope = parts
    else:
        raise ManifestParseError(path, f"line {number}: cannot parse coordinate '{coordinate}'")
    return Artifact(group=g, name=a, version=v, scope=scope)


def parse_dependency_tree(text: str, path: str) -> List[TransitiveEdge]:
    """Parse saved ``mvn dependency:tree`` output into parent -> child edges."""
    edges: List[TransitiveEdge] = []
    stack: List[Artifact] = []
    for number, raw in enumerate(text.splitlines(), start=1):
        line = _LOG_PREFIX.sub("", raw.rstrip())
        match = _TREE_LINE.match(line)
        if not match:
            continue
        depth = len(match.group("prefix")) // 3
        artifact = _tree_artifact(match.group("coord"), path, number)
        if depth > len(stack):
            raise ManifestParseError(path, f"line {number}: indentation skips a level")
        del stack[depth:]
        if stack:
            edges.append(TransitiveEdge(parent=stack[-1], child=artifact))
        stack.append(artifact)
    return edges


# ---------------------------------------------------------------------------
# Project loading
# ---------------------------------------------------------------------------

def find_manifest_files(root: Path, excluded_dirs: Iterable[str]) -> List[Path]:
    """All build manifests under root, sorted, with excluded directories pruned."""
    excluded = set(excluded_dirs)
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded and not d.startswith("."))
        for name in sorted(filenames):
            if name == MAVEN_MANIFEST or name in GRADLE_MANIFESTS:
                found.append(Path(dirpath) / name)
    return sorted(found, key=lambda p: (len(p.relative_to(root).parts), p.as_posix()))


def _relative(root: Path, path: Path) -> str:
    return path.relative_to(root).as_posix()


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _attach_tree(manifest: Manifest, manifest_path: Path, root: Path,
                 errors: List[ManifestError]) -> Manifest:
    """Add declared transitive edges; a bad tree file is recorded and the manifest kept without them."""
    for name in DEPENDENCY_TREE_FILES:
        tree_path = manifest_path.parent / name
        if tree_path.is_file():
            rel = _relative(root, tree_path)
            try:
                edges = parse_dependency_tree(_read(tree_path), rel)
            except ManifestParseError as e:
                logger.warning("Ignoring dependency tree %s: %s", rel, e.detail)
                errors.append(ManifestError(path=rel, message=e.detail))
                return manifest
            logger.debug("Loaded %d declared transitive edges from %s", len(edges), tree_path)
            return manifest.model_copy(update={"transitive": edges})
    return manifest


def load_manifests(root: Path, excluded_dirs: Iterable[str] = ()) -> ManifestSet:
    """Parse every manifest under a project root.

    A manifest that fails to parse is logged and recorded as a
    ManifestError; the remaining manifests are still returned.
    """
    root = root.resolve()
    result = ManifestSet(project_name=root.name)
    maven_contexts: Dict[Path, MavenContext] = {}

    gradle_root_vars: Dict[str, str] = {}
    for settings_name in GRADLE_SETTINGS:
        settings_path = root / settings_name
        if settings_path.is_file():
            root_name, _ = parse_gradle_settings(_read(settings_path))
            if root_name:
                result.project_name = root_name
    root_properties = root / "gradle.properties"
    if root_properties.is_file():
        gradle_root_vars.update(parse_properties_file(_read(root_properties)))

    for manifest_path in find_manifest_files(root, excluded_dirs):
        rel = _relative(root, manifest_path)
        try:
            text = _read(manifest_path)
            if manifest_path.name == MAVEN_MANIFEST:
                parent_ctx = _maven_parent_context(text, manifest_path, maven_contexts)
                manifest, ctx = parse_pom(text, rel, parent_ctx)
                maven_contexts[manifest_path.resolve()] = ctx
            else:
                module_dir = manifest_path.parent
                variables = dict(gradle_root_vars)
                local_properties = module_dir / "gradle.properties"
                if module_dir != root and local_properties.is_file():
                    variables.update(parse_properties_file(_read(local_properties)))
                module_name = result.project_name if module_dir == root else module_dir.name
                manifest = parse_gradle(text, rel, GRADLE_MANIFESTS[manifest_path.name], module_name, variables)
                if module_dir == root:
                    # Subprojects inherit group/version declared at the root
                    if manifest.module.group:
                        gradle_root_vars.setdefault("group", manifest.module.group)
                    if manifest.module.version:
                        gradle_root_vars.setdefault("version", manifest.module.version)
                    manifest = manifest.model_copy(update={"modules": _gradle_modules(root)})
            manifest = _attach_tree(manifest, manifest_path, root, result.errors)
        except ManifestParseError as e:
            logger.warning("Skipping manifest %s: %s", rel, e.detail)
            result.errors.append(ManifestError(path=rel, message=e.detail))
            continue
        except OSError as e:
            logger.warning("Cannot read manifest %s: %s", rel, e)
            result.errors.append(ManifestError(path=rel, message=f"unreadable: {e}"))
            continue
        for coordinate in manifest.unresolved:
            logger.info("Unresolved version for %s in %s", coordinate, rel)
        result.manifests.append(manifest)

    return result


def _gradle_modules(root: Path) -> List[str]:
    for settings_name in GRADLE_SETTINGS:
        settings_path = root / settings_name
        if settings_path.is_file():
            return parse_gradle_settings(_read(settings_path))[1]
    return []


def _maven_parent_context(text: str, manifest_path: Path,
                          contexts: Dict[Path, MavenContext]) -> Optional[MavenContext]:
    match = re.search(r"<parent>(.*?)</parent>", text, re.S)
    if not match:
        return None
    relative = re.search(r"<relativePath>\s*([^<]*?)\s*</relativePath>", match.group(1))
    relative_path = relative.group(1) if relative else "../pom.xml"
    if not relative_path:
        return None
    parent_path = (manifest_path.parent / relative_path)
    if not relative_path.endswith(".xml"):
        parent_path = parent_path / MAVEN_MANIFEST
    return contexts.get(parent_path.resolve())
