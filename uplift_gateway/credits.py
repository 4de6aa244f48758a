"""Prepaid AI credit ledger.

Admission and metering are split around the provider call: ``check`` is an
advisory fast-fail read taken before dispatch, and ``commit`` is the
authoritative guarded decrement taken only after a successful dispatch. The
decrement only applies while the balance is positive, so the balance can
never go negative even when concurrent requests all passed ``check``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol

from google.cloud import firestore

from uplift_gateway.errors import InsufficientCreditsError, NotFoundError


class CreditLedger(Protocol):
    async def check(self, user_id: str) -> int:
        """Return the current balance if it is positive.

        Raises:
            NotFoundError: If the user has no record.
            InsufficientCreditsError: If the balance is zero or less.
        """
        ...

    async def commit(self, user_id: str) -> bool:
        """Decrement the balance by one if it is positive.

        Returns:
            True if a credit was consumed, False if there was none to consume.
        """
        ...


def _require_positive(user_id: str, balance: int) -> int:
    if balance <= 0:
        raise InsufficientCreditsError(detail="User {} has balance {}".format(user_id, balance))
    return balance


@dataclass
class InMemoryCreditLedger:
    """Process-local ledger for tests and development."""

    _balances: Dict[str, int] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def set_balance(self, user_id: str, balance: int) -> None:
        if balance < 0:
            raise ValueError("Balance cannot be negative")
        self._balances[user_id] = balance

    def balance(self, user_id: str) -> int:
        return self._balances[user_id]

    async def check(self, user_id: str) -> int:
        if user_id not in self._balances:
            raise NotFoundError(detail="No user record for {}".format(user_id))
        return _require_positive(user_id, self._balances[user_id])

    async def commit(self, user_id: str) -> bool:
        async with self._lock:
            balance = self._balances.get(user_id, 0)
            if balance <= 0:
                return False
            self._balances[user_id] = balance - 1
            return True


def _read_balance(data: Dict[str, Any], field_path: str) -> int:
    """Resolve a dotted field path (e.g. ``stats.aiCredits``) in a document."""
    value: Any = data
    for part in field_path.split("."):
        if not isinstance(value, dict):
            return 0
        value = value.get(part)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


class FirestoreCreditLedger:
    """Ledger over the ``users`` collection in Firestore."""

    def __init__(
        self,
        client: firestore.AsyncClient,
        collection: str = "users",
        credits_field: str = "stats.aiCredits",
    ) -> None:
        self._client = client
        self._collection = collection
        self._credits_field = credits_field

    def _ref(self, user_id: str) -> firestore.AsyncDocumentReference:
        return self._client.collection(self._collection).document(user_id)

    async def check(self, user_id: str) -> int:
        snapshot = await self._ref(user_id).get()
        if not snapshot.exists:
            raise NotFoundError(detail="No user record for {}".format(user_id))
        balance = _read_balance(snapshot.to_dict() or {}, self._credits_field)
        return _require_positive(user_id, balance)

    async def commit(self, user_id: str) -> bool:
        ref = self._ref(user_id)
        credits_field = self._credits_field

        @firestore.async_transactional
        async def _guarded_decrement(transaction: firestore.AsyncTransaction) -> bool:
            snapshot = await ref.get(transaction=transaction)
            if not snapshot.exists:
                return False
            balance = _read_balance(snapshot.to_dict() or {}, credits_field)
            if balance <= 0:
                return False
            transaction.update(ref, {credits_field: balance - 1})
            return True

        return await _guarded_decrement(self._client.transaction())
