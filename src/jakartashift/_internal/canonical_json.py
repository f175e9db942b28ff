"""Canonical JSON file helpers used for persisted state and CLI output.

Serialization rules live in ``jakartashift.kernel.hash_utils.canonical_dumps``;
this module adds atomic writes so a crash never leaves a half-written file.
"""

import json
import os
from pathlib import Path
from typing import Any, Union

from jakartashift.kernel.hash_utils import canonical_dumps


def write_canonical(path: Union[str, Path], obj: Any) -> None:
    """Write obj as canonical JSON plus a trailing newline, atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp.write_text(canonical_dumps(obj) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON file. Raises json.JSONDecodeError or OSError unchanged."""
    return json.loads(Path(path).read_text(encoding="utf-8"))
