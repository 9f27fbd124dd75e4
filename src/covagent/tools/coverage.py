"""Per-line coverage extraction from JaCoCo-style XML reports.

A report lists ``<sourcefile name="...">`` elements (optionally nested inside
``<package name="a/b">``), each holding ``<line nr=".." mi="..">`` entries.
The processor locates the entry that corresponds to one source file and turns
its lines into covered/missed sets. Which report name belongs to a source
file is language specific, so the lookup is delegated to a resolver chosen by
file extension.
"""

from __future__ import annotations

import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Set

LOGGER = logging.getLogger(__name__)

_JAVA_PACKAGE_RE = re.compile(r"^\s*package\s+([\w.]+)\s*;")
_JAVA_TYPE_RE = re.compile(
    r"^\s*public\s+(?:(?:abstract|final|static|sealed|non-sealed|strictfp)\s+)*"
    r"(?:class|interface|enum|record|@interface)\s+(\w+)"
)


class CoverageReportError(RuntimeError):
    """Base error for coverage report problems."""


class CoverageReportMissing(CoverageReportError):
    """Raised when the coverage report was not produced at all."""


class CoverageReportParseError(CoverageReportError):
    """Raised when the coverage report exists but cannot be interpreted."""


@dataclass(frozen=True, slots=True)
class ReportIdentifier:
    """Name under which a source file appears in the coverage report."""

    name: str
    package: str | None = None


ReportIdentifierResolver = Callable[[Path, str], ReportIdentifier]


def resolve_java_identifier(path: Path, text: str) -> ReportIdentifier:
    """Derive ``<PublicType>.java`` and the slash-separated package from Java source."""
    package: str | None = None
    type_name: str | None = None
    for line in text.splitlines():
        if package is None:
            match = _JAVA_PACKAGE_RE.match(line)
            if match:
                package = match.group(1)
        if type_name is None:
            match = _JAVA_TYPE_RE.match(line)
            if match:
                type_name = match.group(1)
        if package is not None and type_name is not None:
            break

    if type_name is None:
        LOGGER.debug("No public type declaration found in %s; using file name", path)
        type_name = path.stem
    return ReportIdentifier(
        name=f"{type_name}{path.suffix}",
        package=package.replace(".", "/") if package else None,
    )


def resolve_basename_identifier(path: Path, text: str) -> ReportIdentifier:
    return ReportIdentifier(name=path.name)


DEFAULT_RESOLVERS: Dict[str, ReportIdentifierResolver] = {
    ".java": resolve_java_identifier,
}


@dataclass(slots=True)
class CoverageData:
    """Covered and missed line numbers for one compilation unit."""

    covered_lines: Set[int] = field(default_factory=set)
    missed_lines: Set[int] = field(default_factory=set)
    coverage_percentage: float = 0.0
    report_stale: bool = False
    matched: bool = False

    @property
    def covered_count(self) -> int:
        return len(self.covered_lines)

    @property
    def missed_count(self) -> int:
        return len(self.missed_lines)

    def summary(self) -> str:
        """Render the short textual summary fed back into generation prompts."""
        return (
            f"Lines covered: {self.covered_count}\n"
            f"Lines missed: {self.missed_count}\n"
            f"Percentage covered: {self.coverage_percentage * 100:.2f}%"
        )


def coverage_fraction(covered: int, missed: int) -> float:
    total = covered + missed
    return covered / total if total > 0 else 0.0


class CoverageProcessor:
    """Reads one report for one source file."""

    def __init__(
        self,
        report_path: Path | str,
        source_path: Path | str,
        *,
        resolvers: Optional[Mapping[str, ReportIdentifierResolver]] = None,
    ) -> None:
        self.report_path = Path(report_path)
        self.source_path = Path(source_path)
        self._resolvers: Dict[str, ReportIdentifierResolver] = dict(DEFAULT_RESOLVERS)
        if resolvers:
            self._resolvers.update({key.lower(): value for key, value in resolvers.items()})

    def process(self, since: float | None = None) -> CoverageData:
        """Parse the report, flagging it as stale if not modified after ``since``.

        Raises :class:`CoverageReportMissing` when the report does not exist
        and :class:`CoverageReportParseError` when it cannot be read.
        """
        stale = self.verify_report_update(since)
        data = self.parse()
        data.report_stale = stale
        return data

    def verify_report_update(self, since: float | None) -> bool:
        """Return ``True`` when the report predates ``since`` (epoch seconds)."""
        try:
            modified = os.stat(self.report_path).st_mtime
        except FileNotFoundError as error:
            raise CoverageReportMissing(
                f'Coverage report "{self.report_path}" was not generated.'
            ) from error
        except OSError as error:
            raise CoverageReportParseError(
                f"Unable to stat coverage report {self.report_path}: {error}"
            ) from error
        if not self.report_path.is_file():
            raise CoverageReportMissing(
                f'Coverage report "{self.report_path}" was not generated.'
            )

        if since is not None and modified <= since:
            LOGGER.warning(
                "The coverage report file was not updated after the test command. "
                "report mtime: %.3f, command start: %.3f",
                modified,
                since,
            )
            return True
        return False

    def report_identifier(self) -> ReportIdentifier:
        try:
            text = self.source_path.read_text(encoding="utf-8", errors="replace")
        except OSError as error:
            raise CoverageReportError(
                f"Unable to read source file {self.source_path}: {error}"
            ) from error
        resolver = self._resolvers.get(self.source_path.suffix.lower(), resolve_basename_identifier)
        return resolver(self.source_path, text)

    def parse(self) -> CoverageData:
        identifier = self.report_identifier()
        try:
            tree = ET.parse(self.report_path)
        except FileNotFoundError as error:
            raise CoverageReportMissing(
                f'Coverage report "{self.report_path}" was not generated.'
            ) from error
        except (ET.ParseError, OSError) as error:
            LOGGER.error("Error parsing XML file %s: %s", self.report_path, error)
            raise CoverageReportParseError(
                f"Unable to parse coverage report {self.report_path}: {error}"
            ) from error

        element = self._find_sourcefile(tree.getroot(), identifier)
        if element is None:
            LOGGER.warning("No matching <sourcefile> element found for %s", identifier.name)
            return CoverageData()

        covered: Set[int] = set()
        missed: Set[int] = set()
        for line in element.iter("line"):
            raw_number = line.get("nr")
            try:
                number = int(raw_number or "")
            except ValueError as error:
                raise CoverageReportParseError(
                    f"Invalid line number {raw_number!r} in {self.report_path}"
                ) from error
            if _missed_instructions(line.get("mi")) == 0:
                covered.add(number)
            else:
                missed.add(number)

        missed -= covered
        return CoverageData(
            covered_lines=covered,
            missed_lines=missed,
            coverage_percentage=coverage_fraction(len(covered), len(missed)),
            matched=True,
        )

    @staticmethod
    def _find_sourcefile(root: ET.Element, identifier: ReportIdentifier) -> ET.Element | None:
        if identifier.package:
            for package in root.iter("package"):
                if package.get("name") != identifier.package:
                    continue
                for sourcefile in package.iter("sourcefile"):
                    if sourcefile.get("name") == identifier.name:
                        return sourcefile
        for sourcefile in root.iter("sourcefile"):
            if sourcefile.get("name") == identifier.name:
                return sourcefile
        return None


def _missed_instructions(value: str | None) -> int:
    # A line without a readable count is treated as missed.
    if value is None:
        return 1
    try:
        return int(value.strip())
    except ValueError:
        return 1


__all__ = [
    "CoverageData",
    "CoverageProcessor",
    "CoverageReportError",
    "CoverageReportMissing",
    "CoverageReportParseError",
    "DEFAULT_RESOLVERS",
    "ReportIdentifier",
    "ReportIdentifierResolver",
    "coverage_fraction",
    "resolve_basename_identifier",
    "resolve_java_identifier",
]
