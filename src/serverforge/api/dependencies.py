"""FastAPI dependencies."""

from typing import Optional

from fastapi import Header, HTTPException

from serverforge.config import settings
from serverforge.domain.models import Actor, ActorRole
from serverforge.services.credit_ledger import CreditLedger
from serverforge.services.hosted_invocation_service import HostedInvocationService
from serverforge.services.record_store import RecordStore
from serverforge.services.royalty_service import RoyaltyLedger
from serverforge.services.version_lifecycle_service import VersionLifecycleService

_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    """Process-wide store at ``settings.database_path``."""
    global _store
    if _store is None:
        settings.ensure_directories()
        _store = RecordStore(settings.database_path)
    return _store


def reset_record_store() -> None:
    global _store
    _store = None


async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """Acting user as forwarded by the upstream auth proxy."""
    user_id = str(x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    role_value = str(x_user_role or ActorRole.USER.value).strip().lower()
    try:
        role = ActorRole(role_value)
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role: {role_value}")
    return Actor(user_id=user_id, role=role)


async def require_internal_key(x_internal_key: Optional[str] = Header(default=None)) -> None:
    """Guard for platform-internal callbacks."""
    if x_internal_key != settings.hosted_internal_key:
        raise HTTPException(status_code=403, detail="Forbidden")


def get_lifecycle_service() -> VersionLifecycleService:
    return VersionLifecycleService(get_record_store())


def get_hosted_service() -> HostedInvocationService:
    return HostedInvocationService(get_record_store())


def get_royalty_ledger() -> RoyaltyLedger:
    return RoyaltyLedger(get_record_store())


def get_credit_ledger() -> CreditLedger:
    return CreditLedger(get_record_store())
