"""In-process ledger with the AgriTruthChain contract's rules.

Used for demo mode and tests. ``signer`` plays the relayer: it is ``msg.sender`` for every
write except ``set_verifier``, which is signed by ``owner``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Dict, List, Optional, Set

from services.errors import LedgerReadFailed, WriteRejected
from services.ledger import (
    ZERO_ADDRESS,
    BatchRecord,
    Capability,
    PriceRole,
    RegistrationEvent,
    RegistrationReceipt,
    default_addresses,
)
from utils import is_same_address

logger = logging.getLogger(__name__)

DEMO_CONTRACT_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
DEMO_RELAYER_ADDRESS = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"


def _tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


class InMemoryLedger:
    def __init__(
        self,
        signer: str,
        owner: Optional[str] = None,
        contract_address: str = DEMO_CONTRACT_ADDRESS,
        supports_bulk_ids: bool = True,
        supports_register_for: bool = True,
    ) -> None:
        self.contract_address = contract_address
        self.signer = signer
        self.owner = owner or signer
        self.deployed = True
        self.supports_bulk_ids = supports_bulk_ids
        self.supports_register_for = supports_register_for
        self.verifiers: Set[str] = set()
        self.batches: Dict[int, BatchRecord] = {}
        self.events: List[RegistrationEvent] = []
        # Ids whose struct read raises, to model ABI drift on a partial deployment
        self.unreadable: Set[int] = set()
        self.writes: List[tuple] = []
        self._next_id = 1
        self._lock = asyncio.Lock()

    @property
    def relayer_address(self) -> Optional[str]:
        return self.signer

    @property
    def can_write(self) -> bool:
        return True

    def _now(self) -> int:
        return int(time.time())

    def _is_verifier(self, account: str) -> bool:
        return account.lower() in self.verifiers

    async def check_connection(self) -> bool:
        return True

    async def block_number(self) -> Optional[int]:
        return len(self.writes)

    async def probe_deployed(self, address: Optional[str] = None) -> bool:
        if address and not is_same_address(address, self.contract_address):
            return False
        return self.deployed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def read_batch(self, batch_id: int) -> BatchRecord:
        if batch_id in self.unreadable:
            raise LedgerReadFailed(f"batches({batch_id}) reverted")
        record = self.batches.get(batch_id)
        if record is None:
            # Solidity mappings return a zeroed struct for unknown keys
            return BatchRecord(
                id=0, current_owner=ZERO_ADDRESS, farmer=ZERO_ADDRESS, distributor=ZERO_ADDRESS,
                retailer=ZERO_ADDRESS, consumer=ZERO_ADDRESS, crop_type="", quantity_kg=0,
                base_price_inr=0, harvest_date=0, metadata_cid="", created_at=0, exists=False,
            )
        return record.copy()

    async def read_all_ids(self) -> List[int]:
        if not self.supports_bulk_ids:
            raise LedgerReadFailed("getAllBatchIds not available")
        return sorted(self.batches)

    async def read_registration_events(self, batch_id: Optional[int] = None) -> List[RegistrationEvent]:
        return [e for e in self.events if batch_id is None or e.batch_id == batch_id]

    async def is_verifier(self, account: str) -> bool:
        return self._is_verifier(account)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _require_batch(self, batch_id: int) -> BatchRecord:
        record = self.batches.get(batch_id)
        if record is None or not record.exists:
            raise WriteRejected("batch does not exist")
        return record

    def _record_write(self, name: str, *args) -> str:
        self.writes.append((name,) + args)
        return _tx_hash()

    async def register_batch(
        self,
        crop_type: str,
        quantity_kg: int,
        base_price_inr: int,
        harvest_date: int,
        metadata_cid: str,
        farmer: Optional[str] = None,
    ) -> RegistrationReceipt:
        used_fallback = bool(farmer) and not self.supports_register_for
        async with self._lock:
            holder = farmer if farmer and self.supports_register_for else self.signer
            batch_id = self._next_id
            self._next_id += 1
            now = self._now()
            self.batches[batch_id] = BatchRecord(
                id=batch_id, current_owner=holder, farmer=holder, distributor=ZERO_ADDRESS,
                retailer=ZERO_ADDRESS, consumer=ZERO_ADDRESS, crop_type=crop_type,
                quantity_kg=quantity_kg, base_price_inr=base_price_inr, harvest_date=harvest_date,
                metadata_cid=metadata_cid, created_at=now, exists=True,
            )
            self.events.append(RegistrationEvent(
                batch_id=batch_id, farmer=holder, crop_type=crop_type, quantity_kg=quantity_kg,
                base_price_inr=base_price_inr, harvest_date=harvest_date, metadata_cid=metadata_cid,
                block_number=len(self.writes) + 1, timestamp=now,
            ))
            tx_hash = self._record_write("registerBatch", batch_id)
        if used_fallback:
            await self.transfer_ownership(batch_id, farmer, Capability.SELF_TRANSFER)
        return RegistrationReceipt(batch_id=batch_id, tx_hash=tx_hash, used_fallback=used_fallback)

    def _arrival_role(self, record: BatchRecord, to: str) -> Optional[str]:
        """Downstream role slot that ``to`` occupies or will occupy, None for the farmer."""
        if is_same_address(to, record.farmer):
            return None
        downstream = ("distributor", "retailer", "consumer")
        for role in downstream:
            if is_same_address(to, getattr(record, role)):
                return role
        defaults = default_addresses()
        for role in downstream:
            if getattr(record, role) == ZERO_ADDRESS and is_same_address(to, defaults[role]):
                return role
        for role in downstream:
            if getattr(record, role) == ZERO_ADDRESS:
                return role
        return None

    async def transfer_ownership(self, batch_id: int, to: str, capability: Capability) -> str:
        async with self._lock:
            record = self._require_batch(batch_id)
            if capability is Capability.PRIVILEGED_TRANSFER:
                if not self._is_verifier(self.signer):
                    raise WriteRejected("caller is not a verifier")
            elif not is_same_address(record.current_owner, self.signer):
                raise WriteRejected("caller is not the current owner")

            record.current_owner = to
            role = self._arrival_role(record, to)
            if role is not None:
                # Role slots are filled on first arrival; bought-by timestamps are first-write-wins
                setattr(record, role, to)
                stamp = f"bought_by_{role}_at"
                setattr(record, stamp, getattr(record, stamp) or self._now())
            return self._record_write("transferOwnership", batch_id, to, capability.value)

    async def set_price(self, batch_id: int, role: PriceRole, amount: int) -> str:
        async with self._lock:
            record = self._require_batch(batch_id)
            if amount <= 0:
                raise WriteRejected("price must be positive")
            allowed = self._is_verifier(self.signer)
            if role is PriceRole.FLOOR:
                allowed = allowed or is_same_address(self.signer, record.farmer)
                if allowed:
                    record.min_price_inr = amount
            elif role is PriceRole.DISTRIBUTOR:
                allowed = allowed or is_same_address(self.signer, record.distributor)
                if allowed:
                    record.price_by_distributor_inr = amount
            else:
                allowed = allowed or is_same_address(self.signer, record.retailer)
                if allowed:
                    record.price_by_retailer_inr = amount
            if not allowed:
                raise WriteRejected(f"caller may not set the {role.value} price")
            return self._record_write("setPrice", batch_id, role.value, amount)

    async def set_verifier(self, account: str, allowed: bool) -> str:
        async with self._lock:
            if allowed:
                self.verifiers.add(account.lower())
            else:
                self.verifiers.discard(account.lower())
            return self._record_write("setVerifier", account, allowed)
