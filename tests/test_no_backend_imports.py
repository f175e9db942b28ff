"""Tripwire test: the installed package stays closed under its own imports.

Walks the installed package source tree and fails if any module manipulates
sys.path or pulls in a hosted web stack.
"""

import re
from pathlib import Path


FORBIDDEN_PATTERNS = [
    (r'sys\.path', 'sys.path manipulation'),
    (r'\bfastapi\b', 'fastapi (hosted web framework)'),
    (r'\buvicorn\b', 'uvicorn (hosted ASGI server)'),
    (r'\bflask\b', 'flask (hosted web framework)'),
]


def scan_file_for_forbidden_tokens(file_path: Path) -> list[str]:
    """Return "path:line: description - source" for each forbidden import or sys.path edit."""
    violations = []
    content = file_path.read_text(encoding='utf-8')

    for line_num, line in enumerate(content.split('\n'), 1):
        stripped = line.strip()
        if stripped.startswith('#'):
            continue
        for pattern, description in FORBIDDEN_PATTERNS:
            if not re.search(pattern, line):
                continue
            is_import = stripped.startswith(('from ', 'import '))
            is_path_edit = 'sys.path' in line and ('insert' in line or 'append' in line or '=' in line)
            if is_import or is_path_edit:
                violations.append(f"{file_path}:{line_num}: {description} - {stripped}")

    return violations


def test_no_forbidden_tokens_in_installed_package():
    import jakartashift
    pkg_dir = Path(jakartashift.__file__).parent

    violations = []
    for py_file in pkg_dir.rglob("*.py"):
        if "__pycache__" in str(py_file):
            continue
        violations.extend(scan_file_for_forbidden_tokens(py_file))

    assert not violations, (
        f"Found {len(violations)} forbidden token violations in installed jakartashift package:\n\n"
        + "\n".join(violations)
    )


def test_imports_are_clean():
    import jakartashift
    import jakartashift._internal.executor  # noqa: F401
    import jakartashift._internal.runner  # noqa: F401
    assert jakartashift.__version__ in ("1.0.0", "dev")


def test_internal_not_accessible_from_public():
    """_internal is importable but never advertised in __all__."""
    import jakartashift
    import jakartashift._internal.scanner  # noqa: F401

    assert "_internal" not in jakartashift.__all__
    assert "kernel" not in jakartashift.__all__

    from jakartashift import AnalysisResult, EngineSettings  # noqa: F401


def test_internal_classes_are_not_re_exported():
    """Executor and store types are reachable only through jakartashift._internal."""
    import jakartashift

    for name in ("PhaseExecutor", "CheckpointStore", "LineRewriter", "run_artifact"):
        assert not hasattr(jakartashift, name), name
        assert name not in jakartashift.__all__
    for name in jakartashift.__all__:
        assert hasattr(jakartashift, name), name
