"""Result storage: private workspace directories and the public results tree."""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Protocol

from fbksd_server.coordinator.models import TechniqueView, WorkspaceView
from fbksd_server.storage.common import utc_now

logger = logging.getLogger(__name__)

PUBLICATION_MANIFEST = "publication.json"


class ResultStore(Protocol):
    """Where workspace results live and how they become public."""

    def workspace_path(self, workspace: WorkspaceView) -> Path: ...

    def copy_to_public(self, workspace: WorkspaceView, technique: TechniqueView) -> Path: ...

    def remove(self, workspace: WorkspaceView) -> bool: ...


class FilesystemResultStore:
    """Deterministic directory layout under one data root.

    ``<root>/workspaces/<uuid>`` holds private results and logs,
    ``<root>/public/<type>s/<short_name>`` the published copy.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def workspace_path(self, workspace: WorkspaceView) -> Path:
        return self.root_dir / "workspaces" / workspace.uuid

    def public_path(self, technique: TechniqueView) -> Path:
        return self.root_dir / "public" / technique.technique_type.group / technique.short_name

    def ensure_workspace_dir(self, workspace: WorkspaceView) -> Path:
        path = self.workspace_path(workspace)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def copy_to_public(self, workspace: WorkspaceView, technique: TechniqueView) -> Path:
        """Replace the technique's public tree with this workspace's results."""

        source = self.workspace_path(workspace)
        if not source.is_dir():
            raise FileNotFoundError(f"Workspace results missing: {source}")

        target = self.public_path(technique)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.with_name(f".{target.name}.staging")
        retired = target.with_name(f".{target.name}.retired")
        for leftover in (staging, retired):
            if leftover.exists():
                shutil.rmtree(leftover)

        shutil.copytree(source, staging)
        _write_manifest(staging / PUBLICATION_MANIFEST, workspace=workspace, technique=technique)
        if target.exists():
            target.rename(retired)
        staging.rename(target)
        if retired.exists():
            shutil.rmtree(retired)
        logger.info("Copied workspace %s results to %s", workspace.uuid, target)
        return target

    def remove(self, workspace: WorkspaceView) -> bool:
        path = self.workspace_path(workspace)
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info("Removed workspace directory %s", path)
        return True


def _write_manifest(path: Path, *, workspace: WorkspaceView, technique: TechniqueView) -> None:
    payload = {
        "technique": technique.short_name,
        "technique_type": technique.technique_type.value,
        "full_name": technique.full_name,
        "citation": technique.citation,
        "workspace_uuid": workspace.uuid,
        "commit_sha": workspace.commit_sha,
        "scene_set_version": workspace.scene_set_version,
        "copied_at": utc_now().isoformat(),
    }
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
