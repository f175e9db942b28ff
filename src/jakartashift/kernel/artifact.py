"""Pydantic models for declared artifacts and parsed build manifests."""

import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from jakartashift.codes import NamespaceState


_VERSION_HEAD = re.compile(r"^v?(\d+(?:\.\d+)*)")


def version_key(version: Optional[str]) -> Tuple[int, ...]:
    """Numeric sort key of a version string.

    Only the leading dotted-numeric run is used, so qualifiers such as
    ``.RELEASE``, ``-M1`` or ``.Final`` are ignored. Unparseable versions
    (including unresolved ``${...}`` placeholders) return an empty tuple.
    """
    if not version:
        return ()
    match = _VERSION_HEAD.match(version.strip())
    if not match:
        return ()
    return tuple(int(part) for part in match.group(1).split("."))


def major_version(version: Optional[str]) -> Optional[int]:
    """Major component of a version string, or None if unparseable."""
    key = version_key(version)
    return key[0] if key else None


def version_at_least(version: Optional[str], minimum: str) -> Optional[bool]:
    """Compare a version against a minimum.

    Returns None when either side cannot be parsed so callers can fall
    through to a weaker rule instead of guessing.
    """
    have = version_key(version)
    want = version_key(minimum)
    if not have or not want:
        return None
    width = max(len(have), len(want))
    return have + (0,) * (width - len(have)) >= want + (0,) * (width - len(want))


class Artifact(BaseModel):
    """An identified, versioned dependency unit.

    Identity is ``(group, name, version)``. Instances are frozen; the
    classifier returns classified copies instead of mutating.
    """
    model_config = ConfigDict(frozen=True)

    group: str
    name: str
    version: str = ""
    scope: str = "compile"  # compile | provided | runtime | test | plugin | module | project
    namespace_state: NamespaceState = NamespaceState.UNKNOWN

    @property
    def coordinate(self) -> str:
        return f"{self.group}:{self.name}"

    @property
    def id(self) -> str:
        if self.version:
            return f"{self.coordinate}:{self.version}"
        return self.coordinate

    def with_state(self, state: NamespaceState) -> "Artifact":
        return self.model_copy(update={"namespace_state": state})


class DeclaredDependency(BaseModel):
    """A dependency as written in a manifest, with its source line."""
    artifact: Artifact
    line: int = 0
    managed: bool = False  # version came from dependencyManagement or a platform


class TransitiveEdge(BaseModel):
    """A depends-on edge taken from declared resolution data (dependency tree)."""
    parent: Artifact
    child: Artifact


class Manifest(BaseModel):
    """A parsed build manifest (one module of the project)."""
    path: str  # project-relative, forward slashes
    kind: str  # "maven" | "gradle" | "gradle-kts"
    module: Artifact
    dependencies: List[DeclaredDependency] = Field(default_factory=list)
    modules: List[str] = Field(default_factory=list)  # declared submodule directories
    transitive: List[TransitiveEdge] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)  # coordinates whose version could not be resolved


class ManifestError(BaseModel):
    """A manifest that could not be parsed; recorded on a PartialGraph."""
    path: str
    message: str


class DeclarationSite(BaseModel):
    """Where an artifact is declared."""
    path: str
    line: int = 0
