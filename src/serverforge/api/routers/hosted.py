"""Hosted servers router - public entry points of deployed projects."""

from typing import Any

from fastapi import APIRouter, Body, Depends, Response
from pydantic import BaseModel, Field

from serverforge.api.dependencies import (
    get_hosted_service,
    get_royalty_ledger,
    require_internal_key,
)
from serverforge.services.hosted_invocation_service import HostedInvocationService
from serverforge.services.royalty_service import RoyaltyLedger

router = APIRouter(prefix="/hosted", tags=["hosted"])

# Set by the ASGI server for the forwarded body.
_HOP_BY_HOP_HEADERS = frozenset({"content-length", "transfer-encoding", "connection"})


class RoyaltyRequest(BaseModel):
    """Charge callback from the platform's generation pipeline."""

    created_image_id: str = Field(min_length=1)
    credits_charged: float = Field(ge=0)


@router.get("/{project_id}")
async def describe_hosted_server(
    project_id: str,
    service: HostedInvocationService = Depends(get_hosted_service),
) -> dict:
    """Capabilities of a hosted server."""
    return await service.describe(project_id)


@router.post("/{project_id}")
async def invoke_hosted_server(
    project_id: str,
    payload: Any = Body(default=None),
    service: HostedInvocationService = Depends(get_hosted_service),
) -> Response:
    """Run one generation; status, headers and body are forwarded as produced."""
    outcome = await service.invoke(project_id, payload)
    headers = {
        name: value
        for name, value in outcome.headers.items()
        if name.lower() not in _HOP_BY_HOP_HEADERS
    }
    return Response(
        content=outcome.body,
        status_code=outcome.status_code,
        headers=headers,
        media_type=outcome.content_type or None,
    )


@router.post(
    "/{project_id}/royalties",
    status_code=201,
    dependencies=[Depends(require_internal_key)],
)
async def record_royalty(
    project_id: str,
    body: RoyaltyRequest,
    ledger: RoyaltyLedger = Depends(get_royalty_ledger),
) -> dict:
    royalty = ledger.record(project_id, body.created_image_id, body.credits_charged)
    return {"royalty": royalty.to_dict()}
