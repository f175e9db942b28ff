"""Knowledge base I/O helpers (internal)."""

import logging
from functools import lru_cache
from importlib.resources import files
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from jakartashift.exceptions import KnowledgeBaseError
from jakartashift.kernel.knowledge import KnowledgeBase

logger = logging.getLogger(__name__)

BUNDLED_KB = "jakarta-mappings.yaml"


def parse_knowledge_base(text: str, source: str = "<string>") -> KnowledgeBase:
    """Parse and validate a knowledge base from YAML text."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise KnowledgeBaseError(f"Invalid YAML in knowledge base {source}: {e}") from e
    if not isinstance(raw, dict):
        raise KnowledgeBaseError(f"Knowledge base {source} must be a mapping at the top level")
    try:
        kb = KnowledgeBase.model_validate(raw)
    except ValidationError as e:
        raise KnowledgeBaseError(f"Knowledge base {source} failed validation: {e}") from e
    logger.debug(
        "Loaded knowledge base %s (kb_version=%s, %d entries, %d family rules)",
        source, kb.kb_version, len(kb.entries), len(kb.family_rules),
    )
    return kb


def load_knowledge_base_from_path(path: Union[str, Path]) -> KnowledgeBase:
    """Load a knowledge base from a YAML file path."""
    kb_path = Path(path)
    try:
        text = kb_path.read_text(encoding="utf-8")
    except OSError as e:
        raise KnowledgeBaseError(f"Cannot read knowledge base {kb_path}: {e}") from e
    return parse_knowledge_base(text, source=str(kb_path))


@lru_cache(maxsize=1)
def load_bundled_knowledge_base() -> KnowledgeBase:
    """Load the Java EE -> Jakarta EE table shipped with the package."""
    resource = files("jakartashift") / "data" / BUNDLED_KB
    return parse_knowledge_base(resource.read_text(encoding="utf-8"), source=BUNDLED_KB)


def load_knowledge_base(path: Optional[Union[str, Path]] = None) -> KnowledgeBase:
    """Load the configured knowledge base, or the bundled one when path is None."""
    if path is None:
        return load_bundled_knowledge_base()
    return load_knowledge_base_from_path(path)
