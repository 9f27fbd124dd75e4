"""File helpers used to assemble prompt context."""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, List

import yaml

LOGGER = logging.getLogger(__name__)

UNKNOWN_LANGUAGE = "unknown"
_LANGUAGE_RESOURCE = "language_extensions.yaml"
_LINE_BREAK = re.compile(r"\r?\n")


def split_lines(text: str) -> List[str]:
    """Split on ``\\n`` and ``\\r\\n`` only; other separators stay inside the line."""
    if not text:
        return []
    lines = _LINE_BREAK.split(text)
    if lines[-1] == "":
        lines.pop()
    return lines


def numbered_listing(text: str) -> str:
    """Prefix every line of ``text`` with its 1-based line number."""
    return "\n".join(f"{index} {line}" for index, line in enumerate(split_lines(text), start=1))


def relative_path(path: Path | str, base: Path | str) -> str:
    """Return ``path`` relative to ``base``, or ``path`` unchanged when unrelated."""
    try:
        return Path(os.path.relpath(Path(path).resolve(), Path(base).resolve())).as_posix()
    except ValueError:
        LOGGER.warning("Could not relativize %s against %s", path, base)
        return Path(path).as_posix()


def included_files_content(paths: Iterable[Path | str]) -> str:
    """Concatenate readable files, each prefixed with its path, into one block."""
    blocks: list[str] = []
    for path in paths:
        try:
            content = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.warning("Skipping included file %s: %s", path, error)
            continue
        blocks.append(f"file_path: `{Path(path).as_posix()}`\ncontent:\n```\n{content}\n```")
    return "\n".join(blocks).strip()


@lru_cache(maxsize=1)
def _extension_map() -> Dict[str, str]:
    raw = resources.files("covagent.resources").joinpath(_LANGUAGE_RESOURCE).read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    mapping: Dict[str, str] = {}
    for language, extensions in data.items():
        for extension in extensions or ():
            if isinstance(extension, str) and extension.strip():
                mapping[extension.strip().lower()] = str(language).strip().lower()
    return mapping


def language_from_path(path: Path | str) -> str:
    """Infer the programming language from the file extension."""
    suffix = Path(path).suffix.lower()
    if not suffix:
        return UNKNOWN_LANGUAGE
    return _extension_map().get(suffix, UNKNOWN_LANGUAGE)


__all__ = [
    "UNKNOWN_LANGUAGE",
    "included_files_content",
    "language_from_path",
    "numbered_listing",
    "relative_path",
    "split_lines",
]
