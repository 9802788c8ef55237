"""Ledger client contract: named batch records, capabilities and the tuple adapter.

The contract's ``batches(id)`` getter returns a fixed-order tuple. ``batch_from_tuple`` is the
only place that knows that order; everything above the ledger works with ``BatchRecord``.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from config import settings
from services.errors import InvalidLedgerTarget
from utils import is_same_address, is_valid_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Capability(str, Enum):
    SELF_TRANSFER = "self"
    PRIVILEGED_TRANSFER = "verifier"


class PriceRole(str, Enum):
    FLOOR = "floor"
    DISTRIBUTOR = "distributor"
    RETAILER = "retailer"


def default_addresses() -> Dict[str, str]:
    return {
        "farmer": settings.DEFAULT_FARMER_ADDRESS,
        "distributor": settings.DEFAULT_DISTRIBUTOR_ADDRESS,
        "retailer": settings.DEFAULT_RETAILER_ADDRESS,
        "consumer": settings.DEFAULT_CONSUMER_ADDRESS,
    }


@dataclass
class BatchRecord:
    id: int
    current_owner: str
    farmer: str
    distributor: str
    retailer: str
    consumer: str
    crop_type: str
    quantity_kg: int
    base_price_inr: int
    harvest_date: int
    metadata_cid: str
    created_at: int
    exists: bool
    min_price_inr: int = 0
    price_by_distributor_inr: int = 0
    price_by_retailer_inr: int = 0
    bought_by_distributor_at: int = 0
    bought_by_retailer_at: int = 0
    bought_by_consumer_at: int = 0
    verification_status: int = 0
    verification_by: str = ZERO_ADDRESS
    verification_at: int = 0

    def copy(self) -> "BatchRecord":
        return replace(self)


# Output order of the contract's ``batches(uint256)`` getter.
BATCH_TUPLE_FIELDS = tuple(f.name for f in fields(BatchRecord))

_INT_FIELDS = {
    "id", "quantity_kg", "base_price_inr", "harvest_date", "created_at", "min_price_inr",
    "price_by_distributor_inr", "price_by_retailer_inr", "bought_by_distributor_at",
    "bought_by_retailer_at", "bought_by_consumer_at", "verification_status", "verification_at",
}


def batch_from_tuple(raw: Sequence[Any]) -> BatchRecord:
    """Map a positional ``batches(id)`` result onto a ``BatchRecord``.

    Older deployments return only the first 13 members; missing trailing members keep their
    defaults.
    """
    values: Dict[str, Any] = {}
    for name, value in zip(BATCH_TUPLE_FIELDS, raw):
        if name in _INT_FIELDS:
            values[name] = int(value or 0)
        elif name == "exists":
            values[name] = bool(value)
        else:
            values[name] = value or ""
    if len(values) < 13:
        raise ValueError(f"batch tuple too short: {len(values)} members")
    return BatchRecord(**values)


@dataclass
class RegistrationEvent:
    batch_id: int
    farmer: str
    crop_type: str
    quantity_kg: int
    base_price_inr: int
    harvest_date: int
    metadata_cid: str
    block_number: int = 0
    timestamp: int = 0


@dataclass
class RegistrationReceipt:
    batch_id: Optional[int]
    tx_hash: str
    used_fallback: bool = False


class LedgerClient(Protocol):
    """Operations the core needs from the deployed contract."""

    contract_address: str

    @property
    def relayer_address(self) -> Optional[str]: ...

    @property
    def can_write(self) -> bool: ...

    async def check_connection(self) -> bool: ...

    async def probe_deployed(self, address: Optional[str] = None) -> bool: ...

    async def read_batch(self, batch_id: int) -> Optional[BatchRecord]: ...

    async def read_all_ids(self) -> List[int]: ...

    async def read_registration_events(self, batch_id: Optional[int] = None) -> List[RegistrationEvent]: ...

    async def is_verifier(self, account: str) -> bool: ...

    async def register_batch(
        self,
        crop_type: str,
        quantity_kg: int,
        base_price_inr: int,
        harvest_date: int,
        metadata_cid: str,
        farmer: Optional[str] = None,
    ) -> RegistrationReceipt: ...

    async def transfer_ownership(self, batch_id: int, to: str, capability: Capability) -> str: ...

    async def set_price(self, batch_id: int, role: PriceRole, amount: int) -> str: ...

    async def set_verifier(self, account: str, allowed: bool) -> str: ...


async def ensure_ledger_target(ledger: LedgerClient) -> None:
    """Fail fast unless the configured contract address points at deployed code."""
    address = ledger.contract_address
    if not is_valid_address(address):
        raise InvalidLedgerTarget("invalid_contract_address", address)
    if is_same_address(address, ledger.relayer_address):
        raise InvalidLedgerTarget("address_matches_relayer", address)
    if not await ledger.probe_deployed():
        raise InvalidLedgerTarget("not_a_contract", address)
