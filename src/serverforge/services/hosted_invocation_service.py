"""Hosted Invocation - serve deployed projects by re-executing their live code."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import structlog

from serverforge.domain.errors import (
    ExecutionError,
    HostedServerUnavailableError,
    NotFoundError,
    ResultParseError,
)
from serverforge.domain.models import Project, Version
from serverforge.kernel.sandbox.sandbox_runner import SandboxEngine, SandboxOutcome
from serverforge.services.record_store import KIND_PROJECT, KIND_VERSION, RecordStore

logger = structlog.get_logger()


class HostedInvocationService:
    """Public GET/POST entry points of platform-hosted servers."""

    def __init__(self, store: RecordStore, engine: Optional[SandboxEngine] = None):
        self.store = store
        self._engine = engine

    @property
    def engine(self) -> SandboxEngine:
        if self._engine is None:
            from serverforge.kernel.sandbox.sandbox_runner import get_sandbox_engine

            self._engine = get_sandbox_engine()
        return self._engine

    def _load_live(self, project_id: str) -> Tuple[Project, Version]:
        data = self.store.get(KIND_PROJECT, project_id)
        if data is None:
            raise NotFoundError("Server not found")
        project = Project.from_dict(data)
        if not project.is_hosted:
            raise HostedServerUnavailableError("Server not available")
        if not project.live_version_id:
            raise ExecutionError("Server has no live version")

        version_data = self.store.get(KIND_VERSION, project.live_version_id)
        if version_data is None or not version_data.get("generated_code"):
            raise ExecutionError("Server code not found")
        return project, Version.from_dict(version_data)

    async def describe(self, project_id: str) -> Dict[str, Any]:
        """Capabilities of the hosted server, overlaid with project branding."""
        project, version = self._load_live(project_id)
        outcome = await self.engine.execute(
            version.generated_code,
            "GET",
            headers=self.engine.service_headers(),
        )
        if not outcome.success:
            raise ExecutionError("Failed to get server capabilities", stderr=outcome.stderr)

        capabilities = outcome.json()
        if not isinstance(capabilities, dict):
            raise ResultParseError("Invalid server response")

        if project.icon_url:
            capabilities["icon"] = project.icon_url
        if project.banner_url:
            capabilities["banner"] = project.banner_url
        capabilities["name"] = project.name
        capabilities["description"] = project.description or capabilities.get("description")
        return capabilities

    async def invoke(self, project_id: str, payload: Any) -> SandboxOutcome:
        """Run one generation request; the outcome is forwarded verbatim."""
        _, version = self._load_live(project_id)
        outcome = await self.engine.execute(
            version.generated_code,
            "POST",
            headers=self.engine.service_headers(**{"content-type": "application/json"}),
            body=payload,
        )
        if not outcome.success:
            logger.warning(
                "hosted_invocation_failed",
                project_id=project_id,
                status_code=outcome.status_code,
                timed_out=outcome.timed_out,
            )
            raise ExecutionError("Failed to generate image", stderr=outcome.stderr)

        logger.info(
            "hosted_invocation_completed",
            project_id=project_id,
            status_code=outcome.status_code,
            content_type=outcome.content_type,
            bytes=len(outcome.body),
        )
        return outcome
