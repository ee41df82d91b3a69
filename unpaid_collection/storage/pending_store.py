# storage/pending_store.py
# ============================================================================
# UNPAID COLLECTION v1.0 — PENDING-PAYMENT STORE
# ============================================================================
# Durable, account-scoped registry of charges that were dispatched to the
# gateway but not yet confirmed. Survives reloads and process restarts.
#
# READS:
# - list() never raises; an unreadable account lists as empty
# - load(), save() and remove() read strictly and raise StorageError, so a
#   failed read can never be written back over the records it hid
#
# RESERVATIONS:
# - reserve() claims item keys for an attempt that has not stored its
#   record yet (merchant / ledger phase). It fails when a key is stored or
#   already reserved, so two sessions on one account cannot dispatch the
#   same bill. Reservations are process-local.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from unpaid_collection.errors import SelectionConflictError, StorageError
from unpaid_collection.logging_config import get_logger
from unpaid_collection.schemas.collection import PendingPayment
from unpaid_collection.storage.kv_backend import IKeyValueBackend, InMemoryKeyValueBackend

logger = get_logger("pending_store")


class IPendingPaymentStore(ABC):
    """Pending payment repository interface"""

    @abstractmethod
    async def list(self, account_id: str) -> List[PendingPayment]:
        """All pending records for an account. Never raises."""
        pass

    @abstractmethod
    async def load(self, account_id: str) -> List[PendingPayment]:
        """Like list(), but raises StorageError when the records cannot be read."""
        pass

    @abstractmethod
    async def get(self, account_id: str, order_id: str) -> Optional[PendingPayment]:
        pass

    @abstractmethod
    async def save(self, account_id: str, record: PendingPayment) -> PendingPayment:
        """Append or replace by order id."""
        pass

    @abstractmethod
    async def remove(self, account_id: str, order_id: str) -> bool:
        """Delete by order id. Missing ids are a no-op returning False."""
        pass

    @abstractmethod
    async def list_accounts(self) -> List[str]:
        pass

    @abstractmethod
    async def reserve(self, account_id: str, keys: Iterable[str]) -> None:
        """Claim keys for an attempt. Raises SelectionConflictError on overlap."""
        pass

    @abstractmethod
    def release(self, account_id: str, keys: Iterable[str]) -> None:
        pass

    @abstractmethod
    def reserved_keys(self, account_id: str) -> Set[str]:
        pass


class PendingPaymentStore(IPendingPaymentStore):
    """
    Pending store over a key-value backend.

    Each account is one backend key holding the list of its records.
    Entries that fail validation are skipped on read but written back
    untouched, so a bad entry is never silently dropped.
    """

    NAMESPACE = "pending_payments"

    def __init__(self, backend: Optional[IKeyValueBackend] = None):
        self.backend = backend or InMemoryKeyValueBackend()
        self._lock = asyncio.Lock()
        self._reserved: Dict[str, Set[str]] = {}

    def _scope(self, account_id: str) -> str:
        return f"{self.NAMESPACE}:{account_id}"

    def _load(self, account_id: str) -> Tuple[List[PendingPayment], List[Any]]:
        try:
            raw = self.backend.get(self._scope(account_id))
        except (OSError, ValueError) as e:
            raise StorageError(f"Pending payments for {account_id} could not be read: {e}") from e

        if raw is None:
            return [], []
        if not isinstance(raw, list):
            raise StorageError(
                f"Pending payments for {account_id} are malformed ({type(raw).__name__})"
            )

        records, unparsed = [], []
        for entry in raw:
            try:
                records.append(PendingPayment.model_validate(entry))
            except PydanticValidationError as e:
                logger.warning("pending_record_skipped", pym_acnt_id=account_id, error=str(e))
                unparsed.append(entry)
        return records, unparsed

    def _read(self, account_id: str) -> List[PendingPayment]:
        try:
            records, _ = self._load(account_id)
        except StorageError as e:
            logger.error("pending_read_failed", pym_acnt_id=account_id, error=e.message)
            return []
        return records

    def _write(self, account_id: str, records: List[PendingPayment], unparsed: List[Any]) -> None:
        scope = self._scope(account_id)
        payload = [r.model_dump(mode="json") for r in records] + list(unparsed)
        if payload:
            self.backend.set(scope, payload)
        else:
            self.backend.delete(scope)

    async def list(self, account_id: str) -> List[PendingPayment]:
        async with self._lock:
            return self._read(account_id)

    async def load(self, account_id: str) -> List[PendingPayment]:
        async with self._lock:
            records, _ = self._load(account_id)
            return records

    async def get(self, account_id: str, order_id: str) -> Optional[PendingPayment]:
        async with self._lock:
            for record in self._read(account_id):
                if record.order_id == order_id:
                    return record
            return None

    async def save(self, account_id: str, record: PendingPayment) -> PendingPayment:
        async with self._lock:
            records, unparsed = self._load(account_id)
            records = [r for r in records if r.order_id != record.order_id]
            records.append(record)
            self._write(account_id, records, unparsed)

        logger.info(
            "pending_saved",
            pym_acnt_id=account_id,
            order_id=record.order_id,
            amount=record.amount,
            item_keys=record.item_keys,
        )
        return record

    async def remove(self, account_id: str, order_id: str) -> bool:
        async with self._lock:
            records, unparsed = self._load(account_id)
            remaining = [r for r in records if r.order_id != order_id]
            if len(remaining) == len(records):
                return False
            self._write(account_id, remaining, unparsed)

        logger.info("pending_removed", pym_acnt_id=account_id, order_id=order_id)
        return True

    async def list_accounts(self) -> List[str]:
        prefix = f"{self.NAMESPACE}:"
        async with self._lock:
            try:
                keys = self.backend.keys(prefix)
            except OSError as e:
                logger.error("pending_accounts_failed", error=str(e))
                return []
        return [k[len(prefix):] for k in keys]

    # =========================================================================
    # RESERVATIONS
    # =========================================================================

    async def reserve(self, account_id: str, keys: Iterable[str]) -> None:
        keys = set(keys)
        async with self._lock:
            records, _ = self._load(account_id)
            taken = {k for r in records for k in r.item_keys} | self._reserved.get(account_id, set())
            overlap = sorted(keys & taken)
            if overlap:
                logger.warning("reservation_conflict", pym_acnt_id=account_id, keys=overlap)
                raise SelectionConflictError(
                    f"{', '.join(overlap)} already has a payment in progress.", keys=overlap
                )
            self._reserved.setdefault(account_id, set()).update(keys)

    def release(self, account_id: str, keys: Iterable[str]) -> None:
        remaining = self._reserved.get(account_id, set()) - set(keys)
        if remaining:
            self._reserved[account_id] = remaining
        else:
            self._reserved.pop(account_id, None)

    def reserved_keys(self, account_id: str) -> Set[str]:
        return set(self._reserved.get(account_id, ()))
