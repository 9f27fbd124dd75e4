"""Tool integrations used by the coverage loop."""

from .coverage import (
    CoverageData,
    CoverageProcessor,
    CoverageReportError,
    CoverageReportMissing,
    CoverageReportParseError,
    ReportIdentifier,
)
from .files import included_files_content, language_from_path, numbered_listing, relative_path, split_lines
from .runner import CommandResult, run_command

__all__ = [
    "CommandResult",
    "CoverageData",
    "CoverageProcessor",
    "CoverageReportError",
    "CoverageReportMissing",
    "CoverageReportParseError",
    "ReportIdentifier",
    "included_files_content",
    "language_from_path",
    "numbered_listing",
    "relative_path",
    "run_command",
    "split_lines",
]
