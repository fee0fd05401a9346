"""Filesystem helpers for the definition commands."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable

import yaml

DEFINITION_SUFFIXES = {".yaml", ".yml", ".json"}


def _iter_definition_files(search_path: Path) -> Iterable[Path]:
    """Yield definition files under ``search_path``, skipping hidden directories."""

    if search_path.is_file():
        if search_path.suffix in DEFINITION_SUFFIXES:
            yield search_path
        return

    for path in sorted(search_path.rglob("*")):
        relative = path.relative_to(search_path)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file() and path.suffix in DEFINITION_SUFFIXES:
            yield path


def _load_definition_file(path: Path) -> Dict[str, Any]:
    """Parse a YAML or JSON definition file into a mapping.

    JSON is a subset of YAML, so both go through ``yaml.safe_load``.
    """

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a workflow definition mapping")
    return data
