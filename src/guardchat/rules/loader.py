"""YAML filter-rule loading. Files starting with underscore are skipped.

A rules file holds either a bare list of rule mappings or a mapping with a
``rules`` key::

    rules:
      - id: 1
        name: sql_injection
        kind: regex
        pattern: "(?i)drop\\s+table"
        action: block
        applies_to: input
        severity: critical
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from guardchat.models import FilterRule

logger = logging.getLogger(__name__)


def parse_rules(data: Any, *, source: str = "<memory>") -> list[FilterRule]:
    """Build FilterRules from decoded YAML, skipping invalid entries."""
    if isinstance(data, dict):
        data = data.get("rules", [])
    if data is None:
        return []
    if not isinstance(data, list):
        logger.warning("Rules in %s must be a list, got %s", source, type(data).__name__)
        return []

    rules: list[FilterRule] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            logger.warning("Skipping rule #%d in %s: not a mapping", index, source)
            continue
        entry = dict(entry)
        entry.setdefault("id", index + 1)
        if "type" in entry and "kind" not in entry:
            entry["kind"] = entry.pop("type")
        try:
            rules.append(FilterRule.model_validate(entry))
        except PydanticValidationError as exc:
            logger.warning("Skipping rule #%d in %s: %s", index, source, exc)
    return rules


def load_rules_file(path: str | Path) -> list[FilterRule]:
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return parse_rules(data, source=str(path))


def load_rules_directory(directory: str | Path) -> list[FilterRule]:
    """Load all YAML rule files from a directory recursively, in path order."""
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning("Rules directory does not exist: %s", directory)
        return []

    rules: list[FilterRule] = []
    for path in sorted([*directory.rglob("*.yaml"), *directory.rglob("*.yml")]):
        if path.name.startswith("_"):
            continue
        try:
            rules.extend(load_rules_file(path))
        except (OSError, yaml.YAMLError) as exc:
            logger.exception("Failed to load rules from %s: %s", path, exc)
    return rules


def load_rules(path: str | Path) -> list[FilterRule]:
    """Load rules from a single file or a directory of files."""
    path = Path(path)
    if path.is_dir():
        return load_rules_directory(path)
    return load_rules_file(path)
