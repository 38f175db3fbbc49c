"""Credits router - balance lookup and admin grants."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from serverforge.api.dependencies import get_actor, get_credit_ledger
from serverforge.domain.models import Actor
from serverforge.services.credit_ledger import CreditLedger

router = APIRouter(prefix="/credits", tags=["credits"])


class GrantRequest(BaseModel):
    amount: float = Field(gt=0)


@router.get("")
async def get_balance(
    actor: Actor = Depends(get_actor),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> dict:
    return {"user_id": actor.user_id, "balance": ledger.balance(actor.user_id)}


@router.post("/{user_id}/grant")
async def grant_credits(
    user_id: str,
    body: GrantRequest,
    actor: Actor = Depends(get_actor),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> dict:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    balance = ledger.grant(user_id, body.amount)
    return {"user_id": user_id, "balance": balance}
