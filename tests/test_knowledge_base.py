"""Tests for the compatibility knowledge base and its loader."""

import pytest

from jakartashift._internal.io.knowledge_base import (
    load_knowledge_base,
    load_knowledge_base_from_path,
    parse_knowledge_base,
)
from jakartashift.codes import CompatibilityLevel
from jakartashift.exceptions import KnowledgeBaseError
from jakartashift.kernel.knowledge import CompatibilityEntry


def test_bundled_kb_loads(kb):
    assert kb.schema_version == 1
    assert kb.kb_version
    assert kb.lookup_legacy("javax.servlet:javax.servlet-api") is not None
    assert kb.lookup_successor("jakarta.servlet:jakarta.servlet-api") is not None
    assert kb.legacy_roots == ["javax"]
    assert "jakarta" in kb.successor_roots


def test_bundled_kb_is_default(kb):
    assert load_knowledge_base(None) is kb


def test_successor_version_lookup_order():
    entry = CompatibilityEntry(
        legacy="a:b",
        successor="c:d",
        version_map={"2.0": "5.0.0", "3.1": "5.1.0"},
        default_version="6.0.0",
        compatibility=CompatibilityLevel.DROP_IN,
    )
    assert entry.successor_version("2.0") == "5.0.0"  # exact
    assert entry.successor_version("3.2.4") == "5.1.0"  # closest lower
    assert entry.successor_version("1.0") == "6.0.0"  # default
    assert entry.successor_version(None) == "6.0.0"

    no_default = entry.model_copy(update={"default_version": None})
    assert no_default.successor_version("not-a-version") == "5.1.0"  # highest mapped


def test_entry_rejects_bad_coordinate():
    with pytest.raises(ValueError):
        CompatibilityEntry(legacy="no-colon", successor="c:d")


def test_symbol_translation(kb):
    assert kb.translate_symbol("javax.servlet.http.HttpServlet") == "jakarta.servlet.http.HttpServlet"
    assert kb.is_legacy_symbol("javax.persistence.Entity")
    assert kb.is_successor_symbol("jakarta.persistence.Entity")


def test_jdk_packages_are_retained(kb):
    assert kb.is_retained("javax.crypto.Cipher")
    assert not kb.is_legacy_symbol("javax.crypto.Cipher")
    assert kb.translate_symbol("javax.crypto.Cipher") is None


def test_entry_for_symbol_accepts_both_namespaces(kb):
    legacy = kb.entry_for_symbol("javax.servlet.Filter")
    successor = kb.entry_for_symbol("jakarta.servlet.Filter")
    assert legacy is not None
    assert successor is not None
    assert legacy.successor == successor.successor == "jakarta.servlet:jakarta.servlet-api"


def test_family_rule_glob(kb):
    rule = kb.find_family_rule("org.springframework.boot:spring-boot-starter-web")
    assert rule is not None
    assert rule.min_version == "3.0.0"
    assert kb.find_family_rule("com.example:unrelated") is None


def test_invalid_yaml_raises():
    with pytest.raises(KnowledgeBaseError, match="Invalid YAML"):
        parse_knowledge_base("entries: [unclosed", "broken")


def test_unsupported_schema_version_raises():
    with pytest.raises(KnowledgeBaseError, match="schema_version"):
        parse_knowledge_base("schema_version: 99\nkb_version: x\n", "future")


def test_top_level_must_be_mapping():
    with pytest.raises(KnowledgeBaseError, match="mapping"):
        parse_knowledge_base("- just\n- a list\n", "list")


def test_missing_file_raises(tmp_path):
    with pytest.raises(KnowledgeBaseError, match="Cannot read"):
        load_knowledge_base_from_path(tmp_path / "missing.yaml")


def test_load_from_path(tmp_path):
    from conftest import SMALL_KB_YAML

    path = tmp_path / "kb.yaml"
    path.write_text(SMALL_KB_YAML, encoding="utf-8")
    kb = load_knowledge_base(path)
    assert kb.kb_version == "test-1"
    assert kb.lookup_legacy("legacy-lib:legacy-lib-api").successor == "successor-lib:successor-lib-api"
