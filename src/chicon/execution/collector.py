"""Result collector — reads the fixed-path result artifact.

Scripts report results by writing ``key=value`` lines to the result file
(``/result/data.toml`` inside the sandbox). This is the only structured
channel between arbitrary scripts and the engine, so parsing is lenient
and total: each line is classified as an ``Assignment`` or ``Ignored`` and
no single line can make collection fail.

Parsing rules:
    - the line is split on the first ``=``; key and value are kept verbatim
      (only the line terminator is removed)
    - blank lines, lines without ``=`` and lines whose key is empty or
      whitespace are ignored
    - duplicate keys: last write wins, the key keeps its first position

Only the artifact being unreadable as a whole (permission denied, a
directory in place of the file, I/O error) is a hard failure
(``ResultUnreadable``). A missing artifact yields an empty result.

Example:
    >>> parse_result("repository_size=12M\\nnoise\\nrepository_size=13M\\n")
    {'repository_size': '13M'}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from chicon.core.errors import ResultUnreadable
from chicon.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Assignment:
    key: str
    value: str


@dataclass(frozen=True)
class Ignored:
    raw: str
    reason: str


ResultLine = Assignment | Ignored


def classify_line(raw: str) -> ResultLine:
    """Classify a single artifact line. Never raises."""
    line = raw.rstrip("\r\n")
    if not line.strip():
        return Ignored(raw=line, reason="blank")
    key, sep, value = line.partition("=")
    if not sep:
        return Ignored(raw=line, reason="no-assignment")
    if not key.strip():
        return Ignored(raw=line, reason="empty-key")
    return Assignment(key=key, value=value)


def parse_lines(text: str) -> list[ResultLine]:
    # Only "\n" separates lines; other control characters belong to values.
    raws = text.split("\n")
    if raws[-1] == "":
        raws.pop()
    return [classify_line(raw) for raw in raws]


def parse_result(text: str) -> dict[str, str]:
    """Fold artifact text into an ordered ``key → value`` mapping."""
    result: dict[str, str] = {}
    for line in parse_lines(text):
        if isinstance(line, Assignment):
            result[line.key] = line.value
    return result


def format_result(result: dict[str, str]) -> str:
    """Render a mapping in the artifact format (used by fixtures and tooling)."""
    return "".join(f"{key}={value}\n" for key, value in result.items())


@dataclass
class CollectedResult:
    """What the collector found in a result artifact."""

    values: dict[str, str] = field(default_factory=dict)
    present: bool = False
    ignored_lines: int = 0
    truncated: bool = False


class ResultCollector:
    """Reads and parses the result artifact of one execution.

    Args:
        limit_bytes: Maximum number of bytes read from the artifact.
            Anything beyond is dropped and ``truncated`` is set; the final
            partial line is discarded.
    """

    def __init__(self, *, limit_bytes: int = 1_048_576) -> None:
        self._limit = limit_bytes

    def collect(self, artifact: Path) -> CollectedResult:
        """Read *artifact* from the host side of the result mount.

        Raises:
            ResultUnreadable: If the artifact exists but cannot be read.
        """
        try:
            with artifact.open("rb") as handle:
                data = handle.read(self._limit + 1)
        except FileNotFoundError:
            logger.debug("result.absent", path=str(artifact))
            return CollectedResult()
        except OSError as exc:
            raise ResultUnreadable(
                f"Cannot read result artifact: {exc.strerror or exc}",
                context={"path": str(artifact)},
                cause=exc,
            ) from exc

        truncated = len(data) > self._limit
        if truncated:
            data = data[: self._limit]
            cut = data.rfind(b"\n")
            data = data[: cut + 1] if cut >= 0 else b""

        lines = parse_lines(data.decode("utf-8", errors="replace"))
        values: dict[str, str] = {}
        ignored = 0
        for line in lines:
            if isinstance(line, Assignment):
                values[line.key] = line.value
            elif line.reason != "blank":
                ignored += 1

        logger.debug(
            "result.collected",
            path=str(artifact),
            keys=len(values),
            ignored=ignored,
            truncated=truncated,
        )
        return CollectedResult(values=values, present=True, ignored_lines=ignored, truncated=truncated)
