"""Tests for runtime verification and failure diagnosis."""

import io
import sys
import textwrap
import zipfile

import pytest

from jakartashift import api
from jakartashift._internal.io.archive import read_archive
from jakartashift._internal.runner import run_artifact, start_artifact
from jakartashift.codes import BlockerKind, ErrorCategory, ErrorKind, VerificationStatus, WarningCode
from jakartashift.config import EngineSettings
from jakartashift.exceptions import VerificationSetupError
from jakartashift.kernel.diagnosis import (
    ArchiveContents,
    analyze_errors,
    artifact_from_jar,
    cross_check,
    parse_runtime_errors,
    parse_runtime_warnings,
)


TS = "2024-01-01T00:00:00Z"

MISSING_SERVLET = (
    'Exception in thread "main" java.lang.NoClassDefFoundError: javax/servlet/http/HttpServlet\n'
    "\tat com.acme.Main.main(Main.java:10)\n"
    "Caused by: java.lang.ClassNotFoundException: javax.servlet.http.HttpServlet\n"
    "\tat java.base/jdk.internal.loader.BuiltinClassLoader.loadClass(BuiltinClassLoader.java:641)\n"
    "\t... 1 more\n"
)


def _script(tmp_path, stderr: str = "", stdout: str = "", code: int = 0, sleep: float = 0.0):
    """A Python stand-in for the built application; the artifact path is its last argument."""
    path = tmp_path / "fake_app.py"
    path.write_text(textwrap.dedent(f"""
        import sys, time
        time.sleep({sleep!r})
        sys.stdout.write({stdout!r})
        sys.stderr.write({stderr!r})
        sys.exit({code!r})
    """), encoding="utf-8")
    return [sys.executable, str(path)]


def _jar(path, entries):
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return path


def _nested_jar(entries) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def _verify(tmp_path, settings, artifact=None, **script):
    artifact = artifact or _jar(tmp_path / "app.jar", {"META-INF/MANIFEST.MF": "Manifest-Version: 1.0\n"})
    context = api.VerificationContext(command=_script(tmp_path, **script), memory_mb=2048, timeout_seconds=30)
    return api.verify(artifact, context, settings=settings)


def test_missing_legacy_class_is_classpath_issue(tmp_path, settings):
    result = _verify(tmp_path, settings, stderr=MISSING_SERVLET, code=1)

    assert result.status == VerificationStatus.FAILED
    assert result.exit_code == 1
    analysis = result.analysis
    assert analysis.category == ErrorCategory.CLASSPATH_ISSUE
    assert analysis.confidence >= 0.8
    assert any("jakarta.servlet:jakarta.servlet-api" in r for r in analysis.remediation)
    assert analysis.artifacts == ["javax.servlet:javax.servlet-api"]


def test_clean_run_is_success_with_warnings(tmp_path, settings):
    result = _verify(tmp_path, settings, stdout="started\nWARNING: deprecated option -Xfoo\n")

    assert result.status == VerificationStatus.SUCCESS
    assert result.errors == []
    assert result.analysis is None
    assert [w.code for w in result.warnings] == [WarningCode.RUNTIME_WARNING]


def test_zero_exit_with_errors_is_partial(tmp_path, settings):
    result = _verify(tmp_path, settings, stderr=MISSING_SERVLET, code=0)
    assert result.status == VerificationStatus.PARTIAL
    assert len(result.errors) == 2


def test_timeout(tmp_path, settings):
    artifact = _jar(tmp_path / "app.jar", {"a.txt": "x"})
    context = api.VerificationContext(
        command=_script(tmp_path, sleep=30), memory_mb=2048, timeout_seconds=0.5,
    )
    result = api.verify(artifact, context, settings=settings)

    assert result.status == VerificationStatus.TIMEOUT
    assert result.exit_code is None
    # Nothing to explain the hang, so the archive is cross-checked
    assert result.analysis.category == ErrorCategory.UNKNOWN
    assert result.analysis.confidence == 0.0


def test_missing_artifact_fails_without_running(tmp_path, settings):
    result = api.verify(tmp_path / "missing.war", settings=settings)
    assert result.status == VerificationStatus.FAILED
    assert result.analysis.category == ErrorCategory.UNKNOWN
    assert "does not exist" in result.analysis.root_cause


def test_missing_runtime_is_a_setup_error(tmp_path):
    artifact = _jar(tmp_path / "app.jar", {"a.txt": "x"})
    settings = EngineSettings(state_dir=tmp_path / "state", java_executable=str(tmp_path / "no-java"))
    with pytest.raises(VerificationSetupError, match="Cannot start"):
        api.verify(artifact, settings=settings)


def _mixed_war(path):
    legacy_jar = _nested_jar({
        "META-INF/maven/javax.servlet/javax.servlet-api/pom.properties":
            "groupId=javax.servlet\nartifactId=javax.servlet-api\nversion=4.0.1\n",
    })
    return _jar(path, {
        "WEB-INF/lib/javax.servlet-api-4.0.1.jar": legacy_jar,
        "WEB-INF/lib/jakarta.servlet-api-5.0.0.jar": _nested_jar({"x.txt": "x"}),
    })


def test_unexplained_failure_cross_checks_archive(tmp_path, settings):
    artifact = _mixed_war(tmp_path / "app.war")
    result = _verify(tmp_path, settings, artifact=artifact, stderr="something went wrong\n", code=3)

    assert result.status == VerificationStatus.FAILED
    assert result.errors == []
    assert result.analysis.category == ErrorCategory.NAMESPACE_CONFLICT
    assert result.analysis.confidence == 0.7
    assert result.analysis.artifacts == ["javax.servlet:javax.servlet-api"]


def test_partial_run_with_unexplained_errors_cross_checks_archive(tmp_path, settings):
    artifact = _mixed_war(tmp_path / "app.war")
    stderr = "java.lang.ClassCastException: class A cannot be cast to class B\n"
    result = _verify(tmp_path, settings, artifact=artifact, stderr=stderr, code=0)

    assert result.status == VerificationStatus.PARTIAL
    assert len(result.errors) == 1
    assert result.analysis.category == ErrorCategory.NAMESPACE_CONFLICT
    assert result.analysis.artifacts == ["javax.servlet:javax.servlet-api"]


def test_unreadable_archive_is_a_warning(tmp_path, settings):
    artifact = tmp_path / "app.jar"
    artifact.write_text("not a zip", encoding="utf-8")
    result = _verify(tmp_path, settings, artifact=artifact, code=1)

    assert result.status == VerificationStatus.FAILED
    assert result.analysis is None
    assert [w.code for w in result.warnings] == [WarningCode.ARCHIVE_READ_ERROR]


def test_read_archive(tmp_path, kb):
    manifest = (
        "Manifest-Version: 1.0\r\n"
        "Class-Path: lib/javax.persistence-api-2.2.jar lib/jakarta.servl\r\n"
        " et-api-5.0.0.jar\r\n"
    )
    mixed_class = b"\xca\xfe\xba\xbe javax/servlet/Filter jakarta/servlet/Filter"
    artifact = _jar(tmp_path / "app.jar", {
        "META-INF/MANIFEST.MF": manifest,
        "BOOT-INF/lib/broken.jar": b"not a zip",
        "com/acme/Bridge.class": mixed_class,
        "com/acme/Plain.class": b"\xca\xfe\xba\xbe jakarta/servlet/Filter",
    })
    contents = read_archive(artifact, kb)

    assert contents.classpath == ["lib/javax.persistence-api-2.2.jar", "lib/jakarta.servlet-api-5.0.0.jar"]
    assert contents.embedded_jars == ["broken.jar"]
    assert contents.mixed_classes == ["com/acme/Bridge.class"]


def test_parse_runtime_errors():
    errors = parse_runtime_errors("", MISSING_SERVLET + "done\n", TS)

    first, second = errors
    assert first.kind == ErrorKind.NO_CLASS_DEF_FOUND
    assert first.symbol == "javax.servlet.http.HttpServlet"
    assert first.source_file == "Main.java"
    assert first.trace == ["at com.acme.Main.main(Main.java:10)"]
    assert second.kind == ErrorKind.CLASS_NOT_FOUND
    assert len(second.trace) == 2
    assert second.timestamp == TS


def test_parse_runtime_warnings():
    assert parse_runtime_warnings("ok\n[WARNING] slow\n", "Deprecated API used\n") == [
        "Deprecated API used",
        "[WARNING] slow",
    ]


def test_namespace_conflict_signature(kb):
    stderr = (
        "java.lang.ClassCastException: class jakarta.servlet.http.HttpServletRequest "
        "cannot be cast to class javax.servlet.http.HttpServletRequest\n"
    )
    analysis = analyze_errors(parse_runtime_errors("", stderr, TS), kb)
    assert analysis.category == ErrorCategory.NAMESPACE_CONFLICT
    assert analysis.confidence == 0.85


def test_successor_class_missing_names_coordinate(kb):
    stderr = "java.lang.ClassNotFoundException: jakarta.persistence.Entity\n"
    analysis = analyze_errors(parse_runtime_errors("", stderr, TS), kb)
    assert analysis.category == ErrorCategory.CLASSPATH_ISSUE
    assert analysis.remediation[0].startswith("Add jakarta.persistence:")


def test_binary_incompatibility_and_strongest_finding(kb):
    stderr = (
        "java.lang.NoSuchMethodError: 'void com.acme.Lib.run()'\n"
        "java.lang.ClassNotFoundException: javax.servlet.Filter\n"
    )
    analysis = analyze_errors(parse_runtime_errors("", stderr, TS), kb)
    # The legacy-class signature is stronger than the binary one
    assert analysis.category == ErrorCategory.CLASSPATH_ISSUE
    assert analysis.confidence == 0.9
    assert len(analysis.contributing_factors) == 1

    only_binary = analyze_errors(parse_runtime_errors("", stderr.splitlines()[0] + "\n", TS), kb)
    assert only_binary.category == ErrorCategory.BINARY_INCOMPATIBILITY


def test_no_signature_means_no_analysis(kb):
    errors = parse_runtime_errors("", "java.lang.ClassCastException: class A cannot be cast to class B\n", TS)
    assert len(errors) == 1
    assert analyze_errors(errors, kb) is None


def test_correlation_with_plan(make_project, kb, settings):
    from conftest import java, pom

    root = make_project({
        "pom.xml": pom("com.acme", "app", "1.0", [("javax.servlet", "javax.servlet-api", "4.0.1")]),
        "src/main/java/com/acme/Web.java": java("com.acme", "Web", ["javax.servlet.http.HttpServlet"]),
        "src/main/java/com/acme/Db.java": java("com.acme", "Db", ["javax.persistence.Entity"]),
    })
    migration_plan = api.plan(root, knowledge_base=kb, settings=settings)
    analysis = analyze_errors(parse_runtime_errors("", MISSING_SERVLET, TS), kb, migration_plan)

    assert analysis.related_phases == [1, 2]
    assert analysis.related_files == ["pom.xml", "src/main/java/com/acme/Web.java"]


def test_cross_check_without_findings(kb):
    analysis = cross_check(ArchiveContents(path="app.jar", embedded_jars=["commons-lang3-3.12.0.jar"]), kb)
    assert analysis.category == ErrorCategory.UNKNOWN
    assert analysis.confidence == 0.0


def test_cross_check_legacy_only(kb):
    analysis = cross_check(ArchiveContents(path="app.jar", classpath=["lib/javax.servlet-api-4.0.1.jar"]), kb)
    assert analysis.category == ErrorCategory.CLASSPATH_ISSUE
    assert analysis.remediation == ["Replace javax.servlet:javax.servlet-api"]


def test_artifact_from_jar(kb):
    assert artifact_from_jar("lib/javax.servlet-api-4.0.1.jar", kb).id == "javax.servlet:javax.servlet-api:4.0.1"
    assert artifact_from_jar("guava-33.0.0-jre.jar", kb).id == ":guava:33.0.0-jre"
    assert artifact_from_jar("no-version.jar", kb) is None


def test_runtime_findings_become_blockers(make_project, kb, settings):
    from conftest import pom

    root = make_project({
        "pom.xml": pom("com.acme", "app", "1.0", [("javax.servlet", "javax.servlet-api", "4.0.1")]),
    })
    analysis = api.analyze(root, knowledge_base=kb, settings=settings)
    stderr = (
        "java.lang.ClassCastException: class jakarta.servlet.Filter cannot be cast to class javax.servlet.Filter\n"
    )
    verification = api.VerificationResult(
        artifact_path="app.war",
        status=VerificationStatus.FAILED,
        analysis=analyze_errors(parse_runtime_errors("", stderr, TS), kb),
    )

    updated = api.incorporate_findings(analysis, verification)

    [blocker] = [b for b in updated.blockers if b.kind == BlockerKind.BINARY_INCOMPATIBLE]
    assert blocker.artifact == "javax.servlet:javax.servlet-api:4.0.1"
    assert updated.risk.score > analysis.risk.score
    # Incorporating the same findings twice adds nothing
    assert api.incorporate_findings(updated, verification).blockers == updated.blockers


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process handling")
def test_custom_command_receives_artifact_path(tmp_path, settings):
    artifact = _jar(tmp_path / "app.jar", {"a.txt": "x"})
    script = tmp_path / "echo_args.py"
    script.write_text("import sys\nprint('ARG ' + sys.argv[-1])\n", encoding="utf-8")
    context = api.VerificationContext(command=[sys.executable, str(script)], memory_mb=2048)

    result = api.verify(artifact, context, settings=settings)
    assert result.status == VerificationStatus.SUCCESS


def test_start_artifact_returns_before_the_child_exits(tmp_path):
    artifact = _jar(tmp_path / "app.jar", {"a.txt": "x"})
    command = _script(tmp_path, stdout="done\n", sleep=1.0)

    future = start_artifact(artifact, timeout=30, memory_mb=2048, command=command)

    assert not future.done()
    outcome = future.result(timeout=30)
    assert outcome.returncode == 0
    assert outcome.stdout == "done\n"
    assert outcome.command[-1] == str(artifact)


def test_run_artifact_surfaces_setup_errors(tmp_path):
    artifact = _jar(tmp_path / "app.jar", {"a.txt": "x"})
    with pytest.raises(VerificationSetupError):
        run_artifact(artifact, timeout=5, memory_mb=2048, command=[str(tmp_path / "no-such-binary")])
