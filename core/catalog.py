"""Remediation action catalog: YAML loading, lookup and signal-to-action planning."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from core.exceptions import CatalogParseError
from core.models import ActionPriority, RemediationAction

logger = logging.getLogger(__name__)

FALLBACK_ACTION_ID = "collect-forensics-first"

_PRIORITY_ORDER: dict[ActionPriority, int] = {
    ActionPriority.P0: 0,
    ActionPriority.P1: 1,
    ActionPriority.P2: 2,
}

ModelT = TypeVar("ModelT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class CatalogParser:
    """Loads and validates catalog definitions from YAML files."""

    @staticmethod
    def load_file(path: str | Path, model: type[ModelT]) -> ModelT:
        """Parse a single YAML file into *model*.

        Raises:
            CatalogParseError: if the file cannot be read, is not valid YAML,
                or fails Pydantic validation.
        """
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CatalogParseError(str(path), f"Cannot read file: {exc}") from exc

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise CatalogParseError(str(path), f"Invalid YAML: {exc}") from exc

        if not isinstance(data, dict):
            raise CatalogParseError(str(path), "Top-level value must be a YAML mapping")

        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise CatalogParseError(str(path), str(exc)) from exc

    @staticmethod
    def list_files(directory: str | Path) -> list[Path]:
        """Return paths for all YAML files in a directory without parsing them."""
        directory = Path(directory)
        return sorted(directory.glob("*.yaml")) + sorted(directory.glob("*.yml"))

    @staticmethod
    def load_directory(directory: str | Path, model: type[ModelT]) -> list[ModelT]:
        """Load every YAML file in *directory*.

        Files that fail to parse are skipped with a logged warning; the caller
        receives only the successfully parsed entries.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise CatalogParseError(str(directory), "Catalog directory does not exist")

        loaded: list[ModelT] = []
        for yaml_path in CatalogParser.list_files(directory):
            try:
                loaded.append(CatalogParser.load_file(yaml_path, model))
            except CatalogParseError as exc:
                logger.warning("Skipping catalog file '%s': %s", yaml_path.name, exc)
        return loaded


# ---------------------------------------------------------------------------
# Action catalog
# ---------------------------------------------------------------------------


class ActionCatalog:
    """Read-only set of remediation actions keyed by id."""

    def __init__(self, actions: list[RemediationAction]) -> None:
        self._actions: dict[str, RemediationAction] = {}
        for action in actions:
            if action.id in self._actions:
                logger.warning("Duplicate action id '%s' ignored", action.id)
                continue
            self._actions[action.id] = action

    @classmethod
    def from_directory(cls, directory: str | Path) -> ActionCatalog:
        return cls(CatalogParser.load_directory(directory, RemediationAction))

    def get(self, action_id: str) -> RemediationAction | None:
        return self._actions.get(action_id.strip().lower())

    @property
    def action_ids(self) -> list[str]:
        return list(self._actions)

    def all(self) -> list[RemediationAction]:
        return list(self._actions.values())

    def plan(self, signal_codes: list[str]) -> list[RemediationAction]:
        """Map detected signal codes to candidate actions, most urgent first.

        When signals exist but none maps to a playbook, the forensics fallback
        is returned with the observed codes as its sources.
        """
        codes: list[str] = []
        for code in signal_codes:
            normalized = code.strip().lower()
            if normalized and normalized not in codes:
                codes.append(normalized)
        if not codes:
            return []

        matched = [
            action
            for action in self._actions.values()
            if action.id != FALLBACK_ACTION_ID and set(action.source_codes) & set(codes)
        ]
        if matched:
            return sorted(matched, key=lambda a: _PRIORITY_ORDER[a.priority])

        fallback = self._actions.get(FALLBACK_ACTION_ID)
        if fallback is None:
            return []
        return [fallback.model_copy(update={"source_codes": codes})]
