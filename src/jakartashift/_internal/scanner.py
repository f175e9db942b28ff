"""Project file walking and parallel usage scanning (internal)."""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from jakartashift.codes import FileKind, WarningCode
from jakartashift.contracts import WarningRecord
from jakartashift.kernel.knowledge import KnowledgeBase
from jakartashift.kernel.usage import (
    SOURCE_EXTENSIONS,
    FileUsage,
    SourceFacts,
    extract_source_facts,
    file_kind,
    resolve_references,
    scan_file,
)

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 4 * 1024 * 1024


@dataclass
class ScanResult:
    """Everything the planner needs from the project's files."""
    usages: List[FileUsage] = field(default_factory=list)  # sorted by path
    references: Dict[str, List[str]] = field(default_factory=dict)  # path -> paths it depends on
    file_kinds: Dict[str, FileKind] = field(default_factory=dict)  # every scanned path
    warnings: List[WarningRecord] = field(default_factory=list)


def iter_project_files(root: Path, excluded_dirs: Iterable[str]) -> List[str]:
    """Project-relative paths of every file the scanner cares about, sorted."""
    excluded = set(excluded_dirs)
    paths: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded and not d.startswith("."))
        for name in filenames:
            rel = (Path(dirpath) / name).relative_to(root).as_posix()
            if file_kind(rel) is not None:
                paths.append(rel)
    return sorted(paths)


def _scan_one(root: Path, rel: str, kb: KnowledgeBase
              ) -> Tuple[str, Optional[FileUsage], Optional[SourceFacts], Optional[WarningRecord]]:
    path = root / rel
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return rel, None, None, WarningRecord(
                code=WarningCode.SOURCE_READ_ERROR,
                message=f"skipped: larger than {MAX_FILE_BYTES} bytes",
                path=rel,
            )
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Cannot read %s: %s", rel, e)
        return rel, None, None, WarningRecord(
            code=WarningCode.SOURCE_READ_ERROR, message=f"unreadable: {e}", path=rel
        )
    usage = scan_file(rel, text, kb)
    facts = extract_source_facts(rel, text) if rel.endswith(SOURCE_EXTENSIONS) else None
    return rel, usage, facts, None


def scan_project(root: Path, kb: KnowledgeBase, excluded_dirs: Iterable[str] = (),
                 max_workers: int = 4) -> ScanResult:
    """Scan every source and configuration file under root in parallel.

    Files are independent, so they are fanned out to a thread pool; results
    are collected and sorted by path so output never depends on scheduling.
    """
    root = root.resolve()
    paths = iter_project_files(root, excluded_dirs)
    result = ScanResult()
    facts: List[SourceFacts] = []

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        outcomes = list(executor.map(lambda rel: _scan_one(root, rel, kb), paths))

    for rel, usage, source_facts, warning in outcomes:
        kind = file_kind(rel)
        if kind is not None and kind != FileKind.BUILD:
            result.file_kinds[rel] = kind
        if usage is not None:
            result.usages.append(usage)
        if source_facts is not None:
            facts.append(source_facts)
        if warning is not None:
            result.warnings.append(warning)

    result.references = resolve_references(facts)
    logger.info(
        "Scanned %d files: %d with legacy usage, %d warnings",
        len(paths), len(result.usages), len(result.warnings),
    )
    return result
