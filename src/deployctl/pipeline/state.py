"""Deployment state persistence."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from deployctl.core.exceptions import StateError
from deployctl.core.logging import StructuredLogger
from deployctl.pipeline.models import Deployment, DeploymentStatus

logger = StructuredLogger(__name__)


class DeploymentState:
    """Store one JSON document per deployment, keyed by deployment id."""

    def __init__(self, state_dir: str | Path | None = None):
        """Initialize deployment state manager.

        Args:
            state_dir: Directory to store deployment state
        """
        if state_dir:
            self._state_dir = Path(state_dir)
        else:
            self._state_dir = Path.home() / ".deployctl" / "deployments"
        self._state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _path(self, deployment_id: str) -> Path:
        return self._state_dir / f"{deployment_id}.json"

    def _abort_path(self, deployment_id: str) -> Path:
        return self._state_dir / f"{deployment_id}.abort"

    def save(self, deployment: Deployment) -> None:
        """Save deployment state.

        The document is written to a temporary file and moved into place so a
        crash never leaves a truncated record behind.

        Args:
            deployment: Deployment to save
        """
        state_file = self._path(deployment.id)

        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._state_dir, prefix=f".{deployment.id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(deployment.to_dict(), f, indent=2)
                os.replace(tmp_name, state_file)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

            logger.debug("Saved deployment state", id=deployment.id, status=deployment.status.value)

        except OSError as e:
            raise StateError(
                f"Failed to save deployment state: {e}",
                deployment_id=deployment.id,
            )

    def load(self, deployment_id: str) -> Deployment:
        """Load deployment state.

        Args:
            deployment_id: Deployment ID

        Returns:
            Loaded Deployment
        """
        state_file = self._path(deployment_id)

        if not state_file.exists():
            raise StateError(
                f"Deployment not found: {deployment_id}",
                deployment_id=deployment_id,
            )

        try:
            with open(state_file) as f:
                data = json.load(f)

            deployment = Deployment.from_dict(data)

        except (OSError, ValueError, KeyError) as e:
            raise StateError(
                f"Failed to load deployment state: {e}",
                deployment_id=deployment_id,
            )

        if self.abort_marked(deployment_id):
            deployment.abort_requested = True
        return deployment

    def request_abort(self, deployment_id: str) -> None:
        """Mark a deployment for abort without rewriting its record.

        The process running the deployment checks the marker at each stage
        boundary, so records it saves in the meantime are never overwritten.

        Args:
            deployment_id: Deployment ID
        """
        try:
            self._abort_path(deployment_id).touch()
        except OSError as e:
            raise StateError(
                f"Failed to record abort request: {e}",
                deployment_id=deployment_id,
            )
        logger.debug("Abort marker written", id=deployment_id)

    def abort_marked(self, deployment_id: str) -> bool:
        return self._abort_path(deployment_id).exists()

    def list(
        self,
        status: DeploymentStatus | None = None,
        limit: int = 50,
    ) -> list[Deployment]:
        """List deployments, newest first.

        Args:
            status: Filter by status
            limit: Maximum deployments to return

        Returns:
            List of Deployments
        """
        deployments: list[Deployment] = []

        for state_file in self._state_dir.glob("*.json"):
            try:
                deployment = self.load(state_file.stem)
            except StateError as e:
                logger.warning("Skipping unreadable deployment record", file=state_file.name, error=str(e))
                continue

            if status and deployment.status != status:
                continue

            deployments.append(deployment)

        deployments.sort(key=lambda d: d.created_at, reverse=True)

        return deployments[:limit]

