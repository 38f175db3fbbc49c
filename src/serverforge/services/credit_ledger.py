"""Per-user credit balances. Balances never go negative."""

from __future__ import annotations

from typing import Optional

import structlog

from serverforge.domain.errors import InsufficientCreditsError, InvalidRequestError
from serverforge.services.record_store import RecordStore, StoreTransaction

logger = structlog.get_logger()


def _require_non_negative(amount: float) -> float:
    value = float(amount)
    if value < 0:
        raise InvalidRequestError(f"Credit amount must be non-negative, got {amount}")
    return value


class CreditLedger:
    """Explicit grant/deduct operations over the store's balance table."""

    def __init__(self, store: RecordStore):
        self.store = store

    def balance(self, user_id: str) -> float:
        return self.store.balance(user_id)

    def ensure_available(self, user_id: str, amount: float) -> float:
        """Raise ``InsufficientCreditsError`` unless ``amount`` is covered."""
        required = _require_non_negative(amount)
        balance = self.balance(user_id)
        if balance < required:
            raise InsufficientCreditsError(required=required, balance=balance)
        return balance

    def grant(self, user_id: str, amount: float, tx: Optional[StoreTransaction] = None) -> float:
        value = _require_non_negative(amount)
        if tx is not None:
            return tx.adjust_balance(user_id, value)
        with self.store.transaction() as own_tx:
            balance = own_tx.adjust_balance(user_id, value)
        logger.info("credits_granted", user_id=user_id, amount=value, balance=balance)
        return balance

    def deduct(self, user_id: str, amount: float, tx: Optional[StoreTransaction] = None) -> float:
        value = _require_non_negative(amount)
        if tx is not None:
            return tx.adjust_balance(user_id, -value)
        with self.store.transaction() as own_tx:
            balance = own_tx.adjust_balance(user_id, -value)
        logger.info("credits_deducted", user_id=user_id, amount=value, balance=balance)
        return balance
