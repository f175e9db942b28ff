"""File rewriters: the per-file transformation step of phase execution.

A rewriter gets the absolute file path and the planned actions for it and
either rewrites the file in place or raises RewriteError. The executor takes
a snapshot before calling it and restores the snapshot on failure, so a
rewriter never needs to clean up after itself.
"""

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from jakartashift.codes import ActionType
from jakartashift.exceptions import RewriteError
from jakartashift.kernel.plan import FileAction, SymbolChange

logger = logging.getLogger(__name__)


class Rewriter(Protocol):
    def __call__(self, path: Path, actions: List[FileAction]) -> None:
        ...


_BLOCK_OPEN = re.compile(r"<(dependency|parent|plugin)>")


def _coordinate(text: str) -> Tuple[str, str, str]:
    group, name, version = (text.split(":") + ["", ""])[:3]
    return group, name, version


def _replace_element(lines: List[str], start: int, end: int, tag: str, old: str, new: str) -> bool:
    pattern = re.compile(r"(<" + tag + r">\s*)" + re.escape(old) + r"(\s*</" + tag + r">)")
    for i in range(start, end):
        if pattern.search(lines[i]):
            lines[i] = pattern.sub(lambda m: m.group(1) + new + m.group(2), lines[i], count=1)
            return True
    return False


def _maven_block(lines: List[str], index: int) -> Tuple[int, int]:
    """Line span of the <dependency>, <parent> or <plugin> element around index."""
    for start in range(index, max(-1, index - 20), -1):
        opened = _BLOCK_OPEN.search(lines[start])
        if opened:
            closing = f"</{opened.group(1)}>"
            for end in range(index, min(len(lines), index + 20)):
                if closing in lines[end]:
                    return start, end + 1
            break
    raise RewriteError(f"Line {index + 1} is not inside a <dependency>, <parent> or <plugin> element")


def apply_coordinate_change(lines: List[str], change: SymbolChange) -> None:
    """Rewrite one declared coordinate (group:name:version) in place.

    Gradle string notation is replaced on the declaring line; Maven elements
    and Gradle map notation are rewritten field by field. A version that is
    not written literally (a property, a managed version) raises RewriteError.
    """
    index = change.line - 1
    current = lines[index]
    if change.before in current:
        lines[index] = current.replace(change.before, change.after, 1)
        return
    if change.after in current:
        return
    old, new = _coordinate(change.before), _coordinate(change.after)
    if "<artifactId>" in current:
        start, end = _maven_block(lines, index)
        replace = [("groupId", old[0], new[0]), ("artifactId", old[1], new[1]), ("version", old[2], new[2])]
        for tag, before, after in replace:
            if before == after:
                continue
            if not _replace_element(lines, start, end, tag, before, after):
                raise RewriteError(
                    f"Cannot change <{tag}> {before} to {after} near line {change.line}; update it by hand"
                )
        return
    updated = current
    for before, after in zip(old, new):
        if before == after:
            continue
        quoted = re.compile(r"(['\"])" + re.escape(before) + r"\1")
        if not quoted.search(updated):
            raise RewriteError(f"Line {change.line} does not spell out {before!r}; update it by hand")
        updated = quoted.sub(lambda m: m.group(1) + after + m.group(1), updated, count=1)
    lines[index] = updated


def apply_line_changes(text: str, actions: Sequence[FileAction]) -> str:
    """Replace each changed line's legacy form with its successor form.

    Changes with no successor form (unmapped symbols) cannot be applied
    automatically and raise RewriteError. Line 0 refers to the file name and
    is ignored here.
    """
    lines = text.splitlines(keepends=True)
    for action in actions:
        for change in action.changes:
            if change.line == 0:
                continue
            if change.after is None:
                raise RewriteError(f"No successor known for {change.symbol} on line {change.line}")
            index = change.line - 1
            if index >= len(lines):
                raise RewriteError(f"Line {change.line} is past the end of the file")
            if action.action_type == ActionType.UPDATE_DEPENDENCY:
                apply_coordinate_change(lines, change)
                continue
            current = lines[index]
            if change.before not in current:
                if change.after in current:
                    continue
                raise RewriteError(f"Line {change.line} no longer contains {change.before!r}")
            lines[index] = current.replace(change.before, change.after, 1)
    return "".join(lines)


class LineRewriter:
    """Applies the planned before/after edits directly."""

    def __call__(self, path: Path, actions: List[FileAction]) -> None:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RewriteError(f"Cannot read {path}: {e}") from e
        updated = apply_line_changes(text, actions)
        if updated != text:
            path.write_text(updated, encoding="utf-8")


class CommandRewriter:
    """Delegates the rewrite to an external command (e.g. an OpenRewrite wrapper).

    The command is invoked as ``<command...> <file>``; a non-zero exit is a
    file failure.
    """

    def __init__(self, command: Sequence[str], timeout: Optional[float] = 300):
        if not command:
            raise ValueError("rewrite command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def __call__(self, path: Path, actions: List[FileAction]) -> None:
        try:
            proc = subprocess.run(
                [*self.command, str(path)],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RewriteError(f"Rewrite of {path} timed out after {self.timeout}s") from e
        except OSError as e:
            raise RewriteError(f"Cannot start rewrite command {self.command[0]}: {e}") from e
        if proc.returncode != 0:
            logger.debug("Rewrite stderr for %s: %s", path, proc.stderr)
            raise RewriteError(f"Rewrite command exited {proc.returncode} for {path}: {proc.stderr.strip()[:200]}")


def default_rewriter(command: Optional[Sequence[str]] = None) -> Rewriter:
    if command:
        return CommandRewriter(command)
    return LineRewriter()
