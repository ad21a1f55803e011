# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Workflow definition store: published, immutable workflow versions."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .cache import DefinitionCache, get_cache
from .config import get_config
from .exceptions import DefinitionError
from .models import WorkflowVersion
from .validator import lint

logger = logging.getLogger("loyaltyflow.definitions")

_WORKFLOW_ID = re.compile(r"^[A-Za-z0-9_.\-]+$")

VersionRef = Union[int, str]


class DefinitionStore:
    """
    Stores published workflow versions as JSON files.

    Layout::

        <storage_path>/<workflow_id>/v<N>.json     one file per version
        <storage_path>/<workflow_id>/active.json   {"version": N}

    Version files are written once and never modified; editing a workflow
    means publishing a new version.
    """

    def __init__(self, storage_path: Optional[Path] = None, cache: Optional[DefinitionCache] = None):
        self.storage_path = Path(storage_path) if storage_path else get_config().paths.definitions_dir
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.cache = cache or get_cache()
        self._versions: Dict[Tuple[str, int], WorkflowVersion] = {}

    # ==========================================================================
    # Publishing
    # ==========================================================================

    def publish(self, definition: Dict[str, Any], activate: bool = True) -> WorkflowVersion:
        """
        Validate and store a definition as the next version of its workflow.

        Args:
            definition: Raw definition (``workflow_id`` or ``id``, nodes, connections, ...)
            activate: Make the new version the active one

        Raises:
            DefinitionError: If the definition is malformed
        """
        version = self._build(definition)
        workflow_id = version.workflow_id

        workflow_dir = self.storage_path / workflow_id
        workflow_dir.mkdir(parents=True, exist_ok=True)
        version_file = workflow_dir / f"v{version.version}.json"
        payload = version.model_dump(mode="json", exclude={"is_active"})
        try:
            with open(version_file, "x", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
        except FileExistsError as e:
            raise DefinitionError(
                f"Version {version.version} of {workflow_id} already exists",
                workflow_id=workflow_id,
                cause=e,
            )

        self._versions[(workflow_id, version.version)] = version
        logger.info(f"Published {version.id}")

        for warning in lint(version, self.get_version):
            logger.warning(f"{version.id}: {warning}")

        if activate:
            return self.activate(workflow_id, version.version)
        return version

    def check(self, definition: Dict[str, Any]) -> Tuple[WorkflowVersion, List[str]]:
        """
        Validate a definition without storing it.

        Returns:
            (candidate version, lint warnings)

        Raises:
            DefinitionError: If the definition is malformed
        """
        version = self._build(definition)
        return version, lint(version, self.get_version)

    def _build(self, definition: Dict[str, Any]) -> WorkflowVersion:
        workflow_id = definition.get("workflow_id") or definition.get("id")
        if not workflow_id or not _WORKFLOW_ID.match(str(workflow_id)):
            raise DefinitionError(f"Invalid workflow id: {workflow_id!r}", workflow_id=workflow_id)

        data = {k: v for k, v in definition.items() if k != "id"}
        data.update(
            {
                "workflow_id": workflow_id,
                "version": self._next_version(workflow_id),
                "is_active": False,
                "created_at": datetime.now(),
            }
        )
        return WorkflowVersion.from_definition(data)

    def publish_file(self, file_path: Union[str, Path], activate: bool = True) -> WorkflowVersion:
        """Publish a YAML or JSON definition file"""
        return self.publish(dict(self.cache.load_or_parse(file_path)), activate=activate)

    def activate(self, workflow_id: str, version: int) -> WorkflowVersion:
        """Point ``active`` at an existing version"""
        target = self._load(workflow_id, int(version))
        pointer = self.storage_path / workflow_id / "active.json"
        tmp = pointer.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"version": target.version, "activated_at": datetime.now().isoformat()}, f)
        tmp.replace(pointer)
        logger.info(f"Activated {target.id}")
        return target.model_copy(update={"is_active": True})

    # ==========================================================================
    # Lookup
    # ==========================================================================

    def get_version(self, workflow_id: str, version: VersionRef = "active") -> WorkflowVersion:
        """
        Resolve a workflow version.

        Args:
            workflow_id: Workflow id
            version: Version number or ``"active"``

        Raises:
            DefinitionError: If the workflow or version does not exist
        """
        active = self.active_version_number(workflow_id)
        if version == "active":
            if active is None:
                raise DefinitionError(
                    f"Workflow {workflow_id} has no active version",
                    workflow_id=workflow_id,
                )
            number = active
        else:
            try:
                number = int(version)
            except (TypeError, ValueError):
                raise DefinitionError(f"Invalid version reference: {version!r}", workflow_id=workflow_id)

        loaded = self._load(workflow_id, number)
        if number == active:
            return loaded.model_copy(update={"is_active": True})
        return loaded

    def active_version_number(self, workflow_id: str) -> Optional[int]:
        pointer = self.storage_path / workflow_id / "active.json"
        if not pointer.exists():
            return None
        with open(pointer, encoding="utf-8") as f:
            return int(json.load(f)["version"])

    def list_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        """List all versions of a workflow, oldest first"""
        active = self.active_version_number(workflow_id)
        versions = []
        for number in self._version_numbers(workflow_id):
            loaded = self._load(workflow_id, number)
            versions.append(loaded.model_copy(update={"is_active": number == active}))
        return versions

    def list_workflows(self) -> List[str]:
        return sorted(p.name for p in self.storage_path.iterdir() if p.is_dir())

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _version_numbers(self, workflow_id: str) -> List[int]:
        workflow_dir = self.storage_path / workflow_id
        if not workflow_dir.exists():
            return []
        numbers = []
        for version_file in workflow_dir.glob("v*.json"):
            try:
                numbers.append(int(version_file.stem[1:]))
            except ValueError:
                continue
        return sorted(numbers)

    def _next_version(self, workflow_id: str) -> int:
        numbers = self._version_numbers(workflow_id)
        return numbers[-1] + 1 if numbers else 1

    def _load(self, workflow_id: str, number: int) -> WorkflowVersion:
        key = (workflow_id, number)
        if key in self._versions:
            return self._versions[key]

        version_file = self.storage_path / workflow_id / f"v{number}.json"
        if not version_file.exists():
            raise DefinitionError(
                f"Version {number} of workflow {workflow_id} not found",
                workflow_id=workflow_id,
            )

        with open(version_file, encoding="utf-8") as f:
            data = json.load(f)
        version = WorkflowVersion.from_definition(data)
        self._versions[key] = version
        return version
