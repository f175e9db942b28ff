"""Read what a built jar/war declares about its classpath (internal)."""

import io
import logging
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional, Union

from jakartashift.kernel.artifact import Artifact
from jakartashift.kernel.diagnosis import ArchiveContents
from jakartashift.kernel.knowledge import KnowledgeBase

logger = logging.getLogger(__name__)

LIB_DIRS = ("WEB-INF/lib/", "BOOT-INF/lib/")
MAX_CLASS_ENTRIES = 20000


def _manifest_classpath(archive: zipfile.ZipFile) -> List[str]:
    try:
        raw = archive.read("META-INF/MANIFEST.MF").decode("utf-8", errors="replace")
    except KeyError:
        return []
    # Continuation lines start with a single space
    unfolded = raw.replace("\r\n", "\n").replace("\n ", "")
    for line in unfolded.splitlines():
        if line.lower().startswith("class-path:"):
            return [entry for entry in line.split(":", 1)[1].split() if entry]
    return []


def _pom_properties(archive: zipfile.ZipFile) -> List[Artifact]:
    artifacts = []
    for name in sorted(archive.namelist()):
        if not (name.startswith("META-INF/maven/") and name.endswith("/pom.properties")):
            continue
        values = {}
        for line in archive.read(name).decode("utf-8", errors="replace").splitlines():
            if "=" in line and not line.lstrip().startswith("#"):
                key, _, value = line.partition("=")
                values[key.strip()] = value.strip()
        if values.get("groupId") and values.get("artifactId"):
            artifacts.append(Artifact(
                group=values["groupId"], name=values["artifactId"], version=values.get("version", ""),
            ))
    return artifacts


def _markers(kb: KnowledgeBase):
    legacy = sorted({(pkg.replace(".", "/") + "/").encode() for pkg in kb.package_map})
    successor = sorted({(root + "/").encode() for root in kb.successor_roots})
    return legacy, successor


def _mixed_classes(archive: zipfile.ZipFile, names: Iterable[str], kb: KnowledgeBase) -> List[str]:
    legacy, successor = _markers(kb)
    mixed = []
    for count, name in enumerate(n for n in names if n.endswith(".class")):
        if count >= MAX_CLASS_ENTRIES:
            logger.warning("Stopped class scan after %d entries", MAX_CLASS_ENTRIES)
            break
        data = archive.read(name)
        if any(m in data for m in legacy) and any(m in data for m in successor):
            mixed.append(name)
    return mixed


def read_archive(path: Union[str, Path], kb: KnowledgeBase) -> ArchiveContents:
    """Declared classpath, embedded jars, embedded pom metadata and mixed-namespace classes.

    Raises zipfile.BadZipFile or OSError when the archive cannot be read.
    """
    path = Path(path)
    embedded_artifacts: List[Artifact] = []
    with zipfile.ZipFile(path) as archive:
        names = sorted(archive.namelist())
        classpath = _manifest_classpath(archive)
        embedded = [n for n in names if n.startswith(LIB_DIRS) and n.endswith(".jar")]
        embedded_artifacts.extend(_pom_properties(archive))
        for jar in embedded:
            nested = _read_nested(archive, jar)
            if nested is not None:
                with nested:
                    embedded_artifacts.extend(_pom_properties(nested))
        mixed = _mixed_classes(archive, names, kb)

    unique = {a.id: a for a in embedded_artifacts}
    return ArchiveContents(
        path=str(path),
        classpath=classpath,
        embedded_jars=[jar.rsplit("/", 1)[-1] for jar in embedded],
        embedded_artifacts=[unique[k] for k in sorted(unique)],
        mixed_classes=mixed,
    )


def _read_nested(archive: zipfile.ZipFile, name: str) -> Optional[zipfile.ZipFile]:
    try:
        return zipfile.ZipFile(io.BytesIO(archive.read(name)))
    except zipfile.BadZipFile:
        logger.warning("Embedded jar %s is not a readable archive", name)
        return None
