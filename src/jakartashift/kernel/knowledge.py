"""Compatibility knowledge base: models and lookups.

The knowledge base is a versioned, human-editable table. Loading it from
disk lives in ``jakartashift._internal.io.knowledge_base``; this module only
holds the validated model and its pure queries.
"""

from fnmatch import fnmatchcase
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from jakartashift.codes import CompatibilityLevel
from jakartashift.kernel.artifact import version_key


SUPPORTED_SCHEMA_VERSIONS = (1,)


def _split_coordinate(coordinate: str) -> Tuple[str, str]:
    group, _, name = coordinate.partition(":")
    return group, name


def _has_prefix(group: str, name: str, prefixes: List[str]) -> bool:
    # A bare group such as "javax" counts as well as "javax.servlet"
    for prefix in prefixes:
        if group.startswith(prefix) or name.startswith(prefix) or group == prefix.rstrip(".-"):
            return True
    return False


class CompatibilityEntry(BaseModel):
    """Mapping of one legacy artifact to its successor."""
    legacy: str  # group:name
    successor: str  # group:name
    version_map: Dict[str, str] = Field(default_factory=dict)  # legacy version -> successor version
    default_version: Optional[str] = None
    compatibility: CompatibilityLevel = CompatibilityLevel.MINOR_CHANGES
    breaking_changes: List[str] = Field(default_factory=list)
    packages: List[str] = Field(default_factory=list)  # legacy packages the artifact provides

    @field_validator("legacy", "successor")
    @classmethod
    def validate_coordinate(cls, v: str) -> str:
        group, name = _split_coordinate(v)
        if not group or not name:
            raise ValueError(f"Coordinate '{v}' must have the form 'group:name'")
        return v

    def successor_version(self, legacy_version: Optional[str]) -> Optional[str]:
        """Pick the successor version for a legacy version.

        Order: exact match, closest mapped legacy version below it,
        ``default_version``, then the highest mapped successor version.
        """
        if legacy_version and legacy_version in self.version_map:
            return self.version_map[legacy_version]
        wanted = version_key(legacy_version)
        if wanted:
            lower = [v for v in self.version_map if version_key(v) and version_key(v) <= wanted]
            if lower:
                return self.version_map[max(lower, key=version_key)]
        if self.default_version:
            return self.default_version
        if self.version_map:
            return max(self.version_map.values(), key=version_key)
        return None


class FamilyRule(BaseModel):
    """A coordinate family that uses the successor namespace from min_version on."""
    family: str  # glob over group:name, e.g. "org.springframework.boot:*"
    min_version: str
    description: str = ""
    recommended_version: Optional[str] = None

    def matches(self, coordinate: str) -> bool:
        return fnmatchcase(coordinate, self.family)


class KnowledgeBase(BaseModel):
    """Validated compatibility table with indexed lookups."""
    schema_version: int = 1
    kb_version: str
    legacy_prefixes: List[str] = Field(default_factory=list)
    successor_prefixes: List[str] = Field(default_factory=list)
    entries: List[CompatibilityEntry] = Field(default_factory=list)
    family_rules: List[FamilyRule] = Field(default_factory=list)
    package_map: Dict[str, str] = Field(default_factory=dict)  # legacy package -> successor package
    retained_packages: List[str] = Field(default_factory=list)  # legacy-prefixed packages that never move
    xml_namespaces: Dict[str, str] = Field(default_factory=dict)  # legacy URI -> successor URI

    _by_legacy: Dict[str, CompatibilityEntry] = PrivateAttr(default_factory=dict)
    _by_successor: Dict[str, CompatibilityEntry] = PrivateAttr(default_factory=dict)
    _by_package: Dict[str, CompatibilityEntry] = PrivateAttr(default_factory=dict)
    _reverse_packages: Dict[str, str] = PrivateAttr(default_factory=dict)

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: int) -> int:
        if v not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(
                f"Unsupported knowledge base schema_version {v}; supported: {list(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        return v

    def model_post_init(self, __context) -> None:
        for entry in self.entries:
            self._by_legacy.setdefault(entry.legacy, entry)
            self._by_successor.setdefault(entry.successor, entry)
            for package in entry.packages:
                self._by_package.setdefault(package, entry)
        for legacy, successor in self.package_map.items():
            self._reverse_packages.setdefault(successor, legacy)

    # Coordinate lookups

    def lookup_legacy(self, coordinate: str) -> Optional[CompatibilityEntry]:
        return self._by_legacy.get(coordinate)

    def lookup_successor(self, coordinate: str) -> Optional[CompatibilityEntry]:
        return self._by_successor.get(coordinate)

    def lookup_name(self, name: str) -> Optional[CompatibilityEntry]:
        """Find an entry by artifact name alone (for jars without group metadata)."""
        for entry in self.entries:
            if _split_coordinate(entry.legacy)[1] == name or _split_coordinate(entry.successor)[1] == name:
                return entry
        return None

    def find_family_rule(self, coordinate: str) -> Optional[FamilyRule]:
        """First rule whose family glob matches the coordinate (table order)."""
        for rule in self.family_rules:
            if rule.matches(coordinate):
                return rule
        return None

    def has_legacy_prefix(self, group: str, name: str) -> bool:
        return _has_prefix(group, name, self.legacy_prefixes)

    def has_successor_prefix(self, group: str, name: str) -> bool:
        return _has_prefix(group, name, self.successor_prefixes)

    # Package and symbol lookups

    @property
    def legacy_roots(self) -> List[str]:
        """Package roots of the legacy namespace, e.g. ['javax']."""
        roots = {p.rstrip(".") for p in self.legacy_prefixes if p.endswith(".")}
        roots.update(pkg.split(".")[0] for pkg in self.package_map)
        return sorted(roots)

    @property
    def successor_roots(self) -> List[str]:
        roots = {p.rstrip(".") for p in self.successor_prefixes if p.endswith(".")}
        roots.update(pkg.split(".")[0] for pkg in self.package_map.values())
        return sorted(roots)

    def _longest_prefix(self, symbol: str, candidates) -> Optional[str]:
        best = None
        for package in candidates:
            if symbol == package or symbol.startswith(package + "."):
                if best is None or len(package) > len(best):
                    best = package
        return best

    def is_retained(self, symbol: str) -> bool:
        """True when the symbol lives in a legacy-prefixed package that never moves."""
        retained = self._longest_prefix(symbol, self.retained_packages)
        if retained is None:
            return False
        mapped = self._longest_prefix(symbol, self.package_map)
        return mapped is None or len(retained) >= len(mapped)

    def is_legacy_symbol(self, symbol: str) -> bool:
        """True for a dotted name in the legacy namespace that has to migrate."""
        if not any(symbol == root or symbol.startswith(root + ".") for root in self.legacy_roots):
            return False
        return not self.is_retained(symbol)

    def is_successor_symbol(self, symbol: str) -> bool:
        return any(symbol.startswith(root + ".") for root in self.successor_roots)

    def translate_symbol(self, symbol: str) -> Optional[str]:
        """Successor form of a legacy dotted name, or None when no package mapping exists."""
        if not self.is_legacy_symbol(symbol):
            return None
        package = self._longest_prefix(symbol, self.package_map)
        if package is None:
            return None
        return self.package_map[package] + symbol[len(package):]

    def legacy_package_of(self, symbol: str) -> Optional[str]:
        """Legacy package a symbol belongs to, in either namespace."""
        package = self._longest_prefix(symbol, self.package_map)
        if package is not None:
            return package
        successor = self._longest_prefix(symbol, self._reverse_packages)
        if successor is not None:
            return self._reverse_packages[successor]
        return None

    def entry_for_symbol(self, symbol: str) -> Optional[CompatibilityEntry]:
        """Entry whose artifact provides the symbol's package (legacy or successor form)."""
        legacy_symbol = symbol
        successor = self._longest_prefix(symbol, self._reverse_packages)
        if successor is not None:
            legacy_symbol = self._reverse_packages[successor] + symbol[len(successor):]
        package = self._longest_prefix(legacy_symbol, self._by_package)
        if package is None:
            return None
        return self._by_package[package]
