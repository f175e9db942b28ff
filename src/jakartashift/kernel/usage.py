"""Source usage records and the pure text scanners behind them.

File walking and reading live in ``jakartashift._internal.scanner``; the
functions here take a path string and file text and never touch disk.
"""

import re
from collections import defaultdict
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Pattern, Set, Tuple

from pydantic import BaseModel, Field

from jakartashift.codes import DYNAMIC_USAGE_KINDS, FileKind, UsageKind
from jakartashift.kernel.knowledge import KnowledgeBase


SOURCE_EXTENSIONS = (".java", ".kt", ".groovy", ".scala")
CONFIG_EXTENSIONS = (
    ".xml", ".properties", ".yml", ".yaml", ".jsp", ".jspx", ".jspf",
    ".tag", ".tagx", ".tld", ".xhtml",
)
BUILD_FILES = (
    "pom.xml", "build.gradle", "build.gradle.kts", "settings.gradle",
    "settings.gradle.kts", "gradle.properties", "dependency-tree.txt",
)
TEST_DIRS = ("test", "tests", "it", "integration-test", "testFixtures")
TEST_SUFFIXES = ("Test", "Tests", "IT", "TestCase", "Spec")
SERVICES_DIR = "META-INF/services/"


class SymbolUsage(BaseModel):
    """One legacy symbol occurrence."""
    symbol: str
    line: int  # 1-based; 0 refers to the file name itself
    legacy_form: str
    successor_form: Optional[str] = None  # None when no successor mapping is known
    kind: UsageKind


class FileUsage(BaseModel):
    """All legacy usages in one file. Only emitted for files with at least one usage."""
    path: str
    file_kind: FileKind
    usages: List[SymbolUsage]

    @property
    def is_dynamic(self) -> bool:
        return any(u.kind in DYNAMIC_USAGE_KINDS for u in self.usages)

    @property
    def unmapped(self) -> List[SymbolUsage]:
        return [u for u in self.usages if u.successor_form is None]


class SourceFacts(BaseModel):
    """What a source file declares and references, for the intra-project reference graph."""
    path: str
    package: str = ""
    type_name: str
    imports: List[str] = Field(default_factory=list)
    static_imports: List[str] = Field(default_factory=list)
    wildcard_packages: List[str] = Field(default_factory=list)
    identifiers: List[str] = Field(default_factory=list)  # capitalised simple names, sorted
    qualified_names: List[str] = Field(default_factory=list)  # dotted names, sorted


def file_kind(path: str) -> Optional[FileKind]:
    """Planning category of a project-relative path, or None if the file is not scanned."""
    parts = path.split("/")
    name = parts[-1]
    if name in BUILD_FILES or name.endswith(".gradle") or name.endswith(".gradle.kts"):
        return FileKind.BUILD
    if SERVICES_DIR in path:
        return FileKind.CONFIG
    if name.endswith(SOURCE_EXTENSIONS):
        stem = name.rsplit(".", 1)[0]
        in_test_dir = "src" in parts and any(p in TEST_DIRS for p in parts[parts.index("src") + 1:-1])
        if in_test_dir or stem.endswith(TEST_SUFFIXES):
            return FileKind.TEST
        return FileKind.SOURCE
    if name.endswith(CONFIG_EXTENSIONS):
        return FileKind.CONFIG
    return None


def strip_comments(text: str) -> str:
    """Blank out // and /* */ comments, keeping string literals, offsets and newlines."""
    out: List[str] = []
    i, n = 0, len(text)
    while i < n:
        c = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if c == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(re.sub(r"[^\n]", " ", text[i:end]))
            i = end
        elif c == "/" and nxt == "/":
            end = text.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
            i = end
        elif c in "\"'":
            j = i + 1
            while j < n and text[j] != c and text[j] != "\n":
                if text[j] == "\\":
                    j += 1
                j += 1
            end = min(j + 1, n)
            out.append(text[i:end])
            i = end
        else:
            out.append(c)
            i += 1
    return "".join(out)


@lru_cache(maxsize=16)
def _reference_pattern(roots: Tuple[str, ...]) -> Pattern:
    alternatives = "|".join(re.escape(r) for r in roots)
    return re.compile(r"(?<![\w.$])((?:" + alternatives + r")\.[a-z_][\w]*(?:\.[A-Za-z_$][\w$]*)*(?:\.\*)?)")


_IMPORT = re.compile(r"^\s*import\s+(static\s+)?([\w.]+(?:\.\*)?)\s*;?")
_PACKAGE = re.compile(r"^\s*package\s+([\w.]+)")
_STRING = re.compile(r"\"(?:\\.|[^\"\\])*\"")
_REFLECTIVE_CALL = re.compile(r"\b(?:Class\.forName|loadClass|ServiceLoader\.load|getBean)\s*\(")
_IDENTIFIER = re.compile(r"\b[A-Z][\w$]*\b")
_QUALIFIED = re.compile(r"\b[a-z_][\w]*(?:\.[A-Za-z_][\w$]*)+\b")


def _translate_line(line: str, matches: List[Tuple[int, int, str]], kb: KnowledgeBase) -> str:
    out = line
    for start, end, symbol in sorted(matches, reverse=True):
        translated = _symbol_translation(symbol, kb)
        if translated is not None:
            out = out[:start] + translated + out[end:]
    return out


def _symbol_translation(symbol: str, kb: KnowledgeBase) -> Optional[str]:
    if symbol.endswith(".*"):
        base = kb.translate_symbol(symbol[:-2])
        return None if base is None else base + ".*"
    return kb.translate_symbol(symbol)


def _legacy_matches(line: str, kb: KnowledgeBase) -> List[Tuple[int, int, str]]:
    roots = tuple(kb.legacy_roots)
    if not roots:
        return []
    found = []
    for match in _reference_pattern(roots).finditer(line):
        symbol = match.group(1)
        if kb.is_legacy_symbol(symbol[:-2] if symbol.endswith(".*") else symbol):
            found.append((match.start(1), match.end(1), symbol))
    return found


def _line_usages(original: str, code: str, number: int, kb: KnowledgeBase,
                 kind_for) -> List[SymbolUsage]:
    """Usages on one line; kind_for(match_start, code_line) picks the UsageKind."""
    matches = _legacy_matches(code, kb)
    if not matches:
        return []
    before = original.strip()
    after = _translate_line(original, matches, kb).strip()
    usages = []
    for start, _, symbol in matches:
        translated = _symbol_translation(symbol, kb)
        usages.append(SymbolUsage(
            symbol=symbol,
            line=number,
            legacy_form=before,
            successor_form=after if translated is not None else None,
            kind=kind_for(start, code),
        ))
    return usages


def scan_source(text: str, kb: KnowledgeBase) -> List[SymbolUsage]:
    """Legacy imports, qualified references, string literals and reflective lookups."""
    originals = text.splitlines()
    codes = strip_comments(text).splitlines()
    usages: List[SymbolUsage] = []
    for number, (original, code) in enumerate(zip(originals, codes), start=1):
        imported = _IMPORT.match(code)
        if imported:
            kind = UsageKind.STATIC_IMPORT if imported.group(1) else UsageKind.IMPORT
            usages.extend(_line_usages(original, code, number, kb, lambda s, c, k=kind: k))
            continue
        strings = [m.span() for m in _STRING.finditer(code)]
        reflective = bool(_REFLECTIVE_CALL.search(code))

        def kind_for(start: int, _code: str) -> UsageKind:
            if any(s <= start < e for s, e in strings):
                return UsageKind.REFLECTIVE if reflective else UsageKind.STRING_LITERAL
            return UsageKind.QUALIFIED_REFERENCE

        usages.extend(_line_usages(original, code, number, kb, kind_for))
    return usages


def scan_markup(text: str, kb: KnowledgeBase, property_file: bool = False) -> List[SymbolUsage]:
    """Legacy namespace URIs, class references and property keys in configuration files."""
    usages: List[SymbolUsage] = []
    uris = sorted(kb.xml_namespaces, key=len, reverse=True)
    for number, line in enumerate(text.splitlines(), start=1):
        covered: List[Tuple[int, int]] = []
        for uri in uris:
            for match in re.finditer(re.escape(uri) + r"(?![\w/.-])", line):
                if any(s <= match.start() < e for s, e in covered):
                    continue
                covered.append(match.span())
                usages.append(SymbolUsage(
                    symbol=uri,
                    line=number,
                    legacy_form=line.strip(),
                    successor_form=line.replace(uri, kb.xml_namespaces[uri]).strip(),
                    kind=UsageKind.XML_NAMESPACE,
                ))

        def kind_for(start: int, code: str) -> UsageKind:
            if property_file or re.search(r"\bname\s*=\s*[\"']$", code[:start]):
                return UsageKind.PROPERTY_KEY
            return UsageKind.XML_CLASS_REFERENCE

        usages.extend(_line_usages(line, line, number, kb, kind_for))
    return usages


def scan_service_file(path: str, text: str, kb: KnowledgeBase) -> List[SymbolUsage]:
    """META-INF/services entries: the file name and every provider line."""
    usages: List[SymbolUsage] = []
    service = path.rsplit("/", 1)[-1]
    if kb.is_legacy_symbol(service):
        translated = kb.translate_symbol(service)
        usages.append(SymbolUsage(
            symbol=service,
            line=0,
            legacy_form=path,
            successor_form=path[: len(path) - len(service)] + translated if translated else None,
            kind=UsageKind.SERVICE_FILE,
        ))
    for number, line in enumerate(text.splitlines(), start=1):
        code = line.split("#", 1)[0]
        usages.extend(_line_usages(line, code, number, kb, lambda s, c: UsageKind.SERVICE_FILE))
    return usages


def scan_file(path: str, text: str, kb: KnowledgeBase) -> Optional[FileUsage]:
    """Scan one file; returns None when the file has no legacy usage or is not scanned."""
    kind = file_kind(path)
    if kind is None or kind == FileKind.BUILD:
        return None
    if SERVICES_DIR in path:
        usages = scan_service_file(path, text, kb)
    elif path.endswith(SOURCE_EXTENSIONS):
        usages = scan_source(text, kb)
    else:
        usages = scan_markup(text, kb, property_file=path.endswith((".properties", ".yml", ".yaml")))
    if not usages:
        return None
    usages.sort(key=lambda u: (u.line, u.symbol, u.kind.value))
    return FileUsage(path=path, file_kind=kind, usages=usages)


def extract_source_facts(path: str, text: str) -> SourceFacts:
    """Declarations and references of one source file."""
    code = strip_comments(text)
    package = ""
    imports: List[str] = []
    static_imports: List[str] = []
    wildcards: List[str] = []
    body_lines = []
    for line in code.splitlines():
        pkg = _PACKAGE.match(line)
        if pkg and not package:
            package = pkg.group(1)
            continue
        imported = _IMPORT.match(line)
        if imported:
            target = imported.group(2)
            if target.endswith(".*"):
                wildcards.append(target[:-2])
            elif imported.group(1):
                static_imports.append(target)
            else:
                imports.append(target)
            continue
        body_lines.append(line)
    body = "\n".join(body_lines)
    name = path.rsplit("/", 1)[-1]
    return SourceFacts(
        path=path,
        package=package,
        type_name=name.rsplit(".", 1)[0],
        imports=sorted(set(imports)),
        static_imports=sorted(set(static_imports)),
        wildcard_packages=sorted(set(wildcards)),
        identifiers=sorted(set(_IDENTIFIER.findall(body))),
        qualified_names=sorted(set(_QUALIFIED.findall(body))),
    )


def resolve_references(facts: Iterable[SourceFacts]) -> Dict[str, List[str]]:
    """Intra-project reference graph: path -> sorted paths it depends on.

    A file depends on another project file when it imports its type,
    wildcard-imports its package and names the type, names a type from its
    own package, or spells out its fully qualified name.
    """
    facts = list(facts)
    by_fqn: Dict[str, str] = {}
    by_package: Dict[str, Dict[str, str]] = defaultdict(dict)
    for f in facts:
        fqn = f"{f.package}.{f.type_name}" if f.package else f.type_name
        by_fqn.setdefault(fqn, f.path)
        by_package[f.package].setdefault(f.type_name, f.path)

    def lookup(name: str) -> Optional[str]:
        # Nested types and static members: walk back to an enclosing top-level type
        while name:
            if name in by_fqn:
                return by_fqn[name]
            if "." not in name:
                return None
            name = name.rsplit(".", 1)[0]
        return None

    references: Dict[str, List[str]] = {}
    for f in facts:
        deps: Set[str] = set()
        identifiers = set(f.identifiers)
        for name in f.imports + f.static_imports + f.qualified_names:
            target = lookup(name)
            if target is not None:
                deps.add(target)
        for package in f.wildcard_packages + [f.package]:
            for simple, target in by_package.get(package, {}).items():
                if simple in identifiers:
                    deps.add(target)
        deps.discard(f.path)
        references[f.path] = sorted(deps)
    return dict(sorted(references.items()))
