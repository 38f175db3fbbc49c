"""AI servers router - project and version lifecycle endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from serverforge.api.dependencies import (
    get_actor,
    get_lifecycle_service,
    get_royalty_ledger,
)
from serverforge.domain.models import Actor
from serverforge.services.royalty_service import MAX_PAGE_SIZE, RoyaltyLedger
from serverforge.services.version_lifecycle_service import VersionLifecycleService

router = APIRouter(prefix="/ai-servers", tags=["ai-servers"])


class CreateProjectRequest(BaseModel):
    """Request to create an empty project."""

    name: str = Field(min_length=1)
    description: Optional[str] = None


class UpdateProjectRequest(BaseModel):
    """Partial metadata update; omitted fields are left unchanged."""

    name: Optional[str] = None
    description: Optional[str] = None


class GenerateRequest(BaseModel):
    """Generate a new version from a description."""

    prompt: str

    model_config = {
        "json_schema_extra": {
            "example": {"prompt": "Animated plasma waves in neon colors"}
        }
    }


class RefineRequest(BaseModel):
    """Refine a version (the latest one when ``version_id`` is omitted)."""

    prompt: str
    version_id: Optional[str] = None


class ForkRequest(BaseModel):
    name: Optional[str] = None


class BrandingRequest(BaseModel):
    icon_url: Optional[str] = None
    banner_url: Optional[str] = None


def _provided(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude_unset=True)


@router.get("")
async def list_projects(
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    return {"projects": [p.to_dict() for p in service.list_projects(actor)]}


@router.post("", status_code=201)
async def create_project(
    body: CreateProjectRequest,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    project = service.create_project(actor, body.name, body.description)
    return {"project": project.to_dict()}


@router.post("/generate", status_code=201)
async def generate_new_project(
    body: GenerateRequest,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    """Generate a first version, creating the project from the suggested name."""
    result = await service.generate(actor, body.prompt)
    return result.to_dict()


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    return service.project_overview(actor, project_id)


@router.put("/{project_id}")
async def update_project(
    project_id: str,
    body: UpdateProjectRequest,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    project = service.update_project(actor, project_id, **_provided(body))
    return {"project": project.to_dict()}


@router.post("/{project_id}/generate", status_code=201)
async def generate_version(
    project_id: str,
    body: GenerateRequest,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    result = await service.generate(actor, body.prompt, project_id=project_id)
    return result.to_dict()


@router.post("/{project_id}/refine", status_code=201)
async def refine_version(
    project_id: str,
    body: RefineRequest,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    result = await service.refine(actor, project_id, body.prompt, version_id=body.version_id)
    return result.to_dict()


@router.get("/{project_id}/versions")
async def list_versions(
    project_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    return {"versions": [v.to_dict() for v in service.list_versions(actor, project_id)]}


@router.post("/{project_id}/versions/{version_id}/test")
async def test_version(
    project_id: str,
    version_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    report = await service.run_tests(actor, project_id, version_id)
    payload = report.to_dict()
    return {"success": payload["passed"], "results": payload["results"]}


@router.post("/{project_id}/versions/{version_id}/accept")
async def accept_version(
    project_id: str,
    version_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    return service.accept(actor, project_id, version_id).to_dict()


@router.post("/{project_id}/versions/{version_id}/reject")
async def reject_version(
    project_id: str,
    version_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    version = service.reject(actor, project_id, version_id)
    return {"success": True, "version": version.to_dict()}


@router.put("/{project_id}/versions/{version_id}/set-live")
async def set_live_version(
    project_id: str,
    version_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    project = service.set_live(actor, project_id, version_id)
    return {"project": project.to_dict()}


@router.post("/{project_id}/deploy")
async def deploy_project(
    project_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    return service.deploy(actor, project_id).to_dict()


@router.get("/{project_id}/export")
async def export_project(
    project_id: str,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    return service.export_bundle(actor, project_id).to_dict()


@router.post("/{project_id}/fork", status_code=201)
async def fork_project(
    project_id: str,
    body: Optional[ForkRequest] = None,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    project = service.fork(actor, project_id, name=body.name if body else None)
    return {"project": project.to_dict()}


@router.put("/{project_id}/branding")
async def update_branding(
    project_id: str,
    body: BrandingRequest,
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
) -> dict:
    project = service.update_branding(actor, project_id, **_provided(body))
    return {"project": project.to_dict()}


@router.get("/{project_id}/royalties")
async def list_royalties(
    project_id: str,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    service: VersionLifecycleService = Depends(get_lifecycle_service),
    ledger: RoyaltyLedger = Depends(get_royalty_ledger),
) -> dict:
    service.get_project(actor, project_id)
    royalties = ledger.list_for_project(project_id, limit=min(limit, MAX_PAGE_SIZE), offset=offset)
    return {
        "royalties": [r.to_dict() for r in royalties],
        "stats": ledger.stats(project_id),
    }
