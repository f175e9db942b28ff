"""Pytest configuration and shared fixtures.

No sys.path hacks - tests import from the installed jakartashift package.
"""

import os
from pathlib import Path
from typing import Dict, Iterable, List

import pytest

from jakartashift._internal.io.knowledge_base import load_bundled_knowledge_base, parse_knowledge_base
from jakartashift._internal.rewrite import LineRewriter
from jakartashift.config import EngineSettings
from jakartashift.exceptions import RewriteError


SMALL_KB_YAML = """
schema_version: 1
kb_version: "test-1"
legacy_prefixes: ["legacy-lib", "javax."]
successor_prefixes: ["successor-lib", "jakarta."]
entries:
  - legacy: "legacy-lib:legacy-lib-api"
    successor: "successor-lib:successor-lib-api"
    version_map: {}
    default_version: "6.0.0"
    compatibility: "drop-in"
    breaking_changes: ["Package legacy.api renamed to successor.api"]
    packages: ["javax.widget"]
family_rules:
  - family: "org.acme.framework:*"
    min_version: "3.0.0"
    description: "Acme Framework 3 is built on the successor namespace"
    recommended_version: "3.1.0"
package_map:
  "javax.widget": "jakarta.widget"
retained_packages:
  - "javax.crypto"
xml_namespaces: {}
"""


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Create files (project-relative path -> text) under root."""
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


def pom(group: str, artifact: str, version: str, dependencies: Iterable[tuple] = (), extra: str = "") -> str:
    """Minimal pom.xml; dependencies are (group, artifact, version) tuples."""
    deps = "".join(
        f"""
    <dependency>
      <groupId>{g}</groupId>
      <artifactId>{a}</artifactId>
      <version>{v}</version>
    </dependency>"""
        for g, a, v in dependencies
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
  <modelVersion>4.0.0</modelVersion>
  <groupId>{group}</groupId>
  <artifactId>{artifact}</artifactId>
  <version>{version}</version>{extra}
  <dependencies>{deps}
  </dependencies>
</project>
"""


def java(package: str, name: str, imports: Iterable[str] = (), body: str = "") -> str:
    lines = [f"package {package};", ""]
    lines.extend(f"import {i};" for i in imports)
    lines.append("")
    lines.append(f"public class {name} {{")
    if body:
        lines.append(body)
    lines.append("}")
    return "\n".join(lines) + "\n"


class FakeRewriter:
    """Applies planned line edits, or corrupts and fails for the configured files."""

    def __init__(self, fail: Iterable[str] = ()):
        self.fail = set(fail)
        self.calls: List[str] = []
        self._apply = LineRewriter()

    def __call__(self, path: Path, actions) -> None:
        self.calls.append(path.name)
        if path.name in self.fail:
            path.write_text("half-written garbage", encoding="utf-8")
            raise RewriteError(f"cannot rewrite {path.name}")
        self._apply(path, actions)


@pytest.fixture
def kb():
    return load_bundled_knowledge_base()


@pytest.fixture
def small_kb():
    return parse_knowledge_base(SMALL_KB_YAML, "small-kb")


@pytest.fixture
def make_project(tmp_path):
    def _make(files: Dict[str, str], name: str = "demo") -> Path:
        return write_tree(tmp_path / name, files)
    return _make


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(state_dir=tmp_path / "state", max_workers=2)


def pytest_sessionfinish(session, exitstatus):
    """Best-effort cleanup for basetemp on Windows without patching pytest internals."""
    if os.name != "nt":
        return
    basetemp = getattr(session.config.option, "basetemp", None)
    if not basetemp:
        return
    basetemp_path = Path(basetemp)
    if not basetemp_path.exists():
        return
    try:
        import shutil
        shutil.rmtree(basetemp_path)
    except (PermissionError, OSError):
        # If cleanup fails, let it surface as a warning rather than masking errors.
        import warnings
        warnings.warn(f"Could not remove basetemp: {basetemp_path}")
