"""Custody and pricing rules for a batch, plus registration.

Custody state is derived: ``holder_role`` compares ``current_owner`` with the four role
addresses. Transfers are capability-gated. A holder may only move their own batch one step
forward (farmer -> distributor -> retailer -> consumer); a caller holding the privileged
capability may move it to any address. Both kinds are idempotent on destination.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, FrozenSet, Optional

from services.errors import (
    NotFound,
    RelayerNotConfigured,
    TransitionDenied,
    ValidationFailed,
    WriteRejected,
)
from services.ledger import (
    ZERO_ADDRESS,
    BatchRecord,
    Capability,
    LedgerClient,
    PriceRole,
    default_addresses,
    ensure_ledger_target,
)
from utils import date_to_epoch, is_same_address, is_valid_address

logger = logging.getLogger(__name__)

INLINE_METADATA_PREFIX = "meta:"


class HolderRole(str, Enum):
    FARMER = "farmer"
    DISTRIBUTOR = "distributor"
    RETAILER = "retailer"
    CONSUMER = "consumer"
    UNKNOWN = "unknown"


CUSTODY_ORDER = (HolderRole.FARMER, HolderRole.DISTRIBUTOR, HolderRole.RETAILER, HolderRole.CONSUMER)

PRICE_SETTER = {
    PriceRole.FLOOR: HolderRole.FARMER,
    PriceRole.DISTRIBUTOR: HolderRole.DISTRIBUTOR,
    PriceRole.RETAILER: HolderRole.RETAILER,
}


def role_addresses(batch: BatchRecord) -> Dict[HolderRole, str]:
    """Role slots with unset (zero) addresses replaced by the placeholder accounts."""
    defaults = default_addresses()
    resolved = {}
    for role in CUSTODY_ORDER:
        address = getattr(batch, role.value)
        if not address or address.lower() == ZERO_ADDRESS:
            address = defaults[role.value]
        resolved[role] = address
    return resolved


def holder_role(batch: BatchRecord) -> HolderRole:
    for role, address in role_addresses(batch).items():
        if is_same_address(batch.current_owner, address):
            return role
    return HolderRole.UNKNOWN


def next_role(role: HolderRole) -> Optional[HolderRole]:
    if role not in CUSTODY_ORDER or role is HolderRole.CONSUMER:
        return None
    return CUSTODY_ORDER[CUSTODY_ORDER.index(role) + 1]


def resolve_min_price(batch: BatchRecord) -> int:
    if batch.min_price_inr <= 0 and batch.base_price_inr > 0:
        return batch.base_price_inr
    return batch.min_price_inr


@dataclass(frozen=True)
class Caller:
    """Who is asking for a custody or price change and what they may do."""

    address: Optional[str]
    capabilities: FrozenSet[Capability] = field(default_factory=lambda: frozenset({Capability.SELF_TRANSFER}))

    @classmethod
    def verifier(cls, address: Optional[str]) -> "Caller":
        return cls(address, frozenset({Capability.SELF_TRANSFER, Capability.PRIVILEGED_TRANSFER}))

    @property
    def is_verifier(self) -> bool:
        return Capability.PRIVILEGED_TRANSFER in self.capabilities


class CustodyPolicy:
    """Authorization rules for transfers and price-sets. Raises ``TransitionDenied``."""

    def authorize_transfer(self, batch: BatchRecord, caller: Caller, to: str, capability: Capability) -> None:
        if capability not in caller.capabilities:
            raise TransitionDenied(f"caller lacks the {capability.value} capability")
        if capability is Capability.PRIVILEGED_TRANSFER:
            return

        if not is_same_address(caller.address, batch.current_owner):
            raise TransitionDenied("only the current owner may transfer this batch")
        if is_same_address(to, batch.current_owner):
            return
        current = holder_role(batch)
        following = next_role(current)
        if following is None:
            raise TransitionDenied(f"no forward transfer from {current.value}")
        if not is_same_address(to, role_addresses(batch)[following]):
            raise TransitionDenied(f"{current.value} may only transfer to the {following.value}")

    def authorize_price(self, batch: BatchRecord, caller: Caller, role: PriceRole) -> None:
        if caller.is_verifier:
            return
        setter = PRICE_SETTER[role]
        if not is_same_address(caller.address, role_addresses(batch)[setter]):
            raise TransitionDenied(f"only the {setter.value} may set the {role.value} price")


@dataclass
class RegistrationResult:
    batch_id: Optional[int]
    tx_hash: str
    used_fallback: bool = False
    min_price_tx: Optional[str] = None


@dataclass
class WriteOutcome:
    """Result of a transfer or price-set; ``tx_hash`` is None for an idempotent no-op."""

    batch_id: int
    tx_hash: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.tx_hash is not None


def encode_inline_metadata(
    crop_type: str,
    quantity_kg: int,
    base_price_inr: int,
    harvest_date: int,
    min_price_inr: Optional[int],
) -> str:
    payload = {
        "kind": "registration",
        "cropType": crop_type,
        "quantityKg": quantity_kg,
        "basePriceINR": str(base_price_inr),
        "harvestDate": harvest_date,
    }
    if min_price_inr is not None:
        payload["minPriceINR"] = str(min_price_inr)
    return INLINE_METADATA_PREFIX + json.dumps(payload, separators=(",", ":"))


def decode_inline_metadata(metadata_cid: str) -> Optional[Dict]:
    if not isinstance(metadata_cid, str) or not metadata_cid.startswith(INLINE_METADATA_PREFIX):
        return None
    try:
        payload = json.loads(metadata_cid[len(INLINE_METADATA_PREFIX):])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class CustodyService:
    def __init__(self, ledger: LedgerClient, policy: Optional[CustodyPolicy] = None):
        self.ledger = ledger
        self.policy = policy or CustodyPolicy()

    def _require_writer(self) -> None:
        if not self.ledger.can_write:
            raise RelayerNotConfigured("relayer_not_configured")

    async def load(self, batch_id: int) -> BatchRecord:
        # LedgerReadFailed propagates; only a zeroed struct means the batch is unknown
        batch = await self.ledger.read_batch(batch_id)
        if not batch.exists:
            raise NotFound(f"batch {batch_id} not found")
        return batch

    async def register(
        self,
        *,
        crop_type: str,
        quantity_kg: int,
        base_price_inr: int,
        harvest_date,
        metadata_cid: Optional[str] = None,
        min_price_inr: Optional[int] = None,
        farmer: Optional[str] = None,
    ) -> RegistrationResult:
        if not crop_type or not crop_type.strip():
            raise ValidationFailed("missing_crop_type")
        if quantity_kg is None or quantity_kg <= 0:
            raise ValidationFailed("invalid_quantity")
        if isinstance(harvest_date, date):
            harvest_date = date_to_epoch(harvest_date)
        if not harvest_date or harvest_date <= 0:
            raise ValidationFailed("invalid_harvest_date")
        if base_price_inr is None or base_price_inr <= 0:
            raise ValidationFailed("invalid_base_price")
        if min_price_inr is not None and min_price_inr <= 0:
            raise ValidationFailed("invalid_min_price")
        if farmer and not is_valid_address(farmer):
            raise ValidationFailed("invalid_farmer_address")

        self._require_writer()
        await ensure_ledger_target(self.ledger)

        if not metadata_cid or not metadata_cid.strip():
            metadata_cid = encode_inline_metadata(
                crop_type, quantity_kg, base_price_inr, harvest_date, min_price_inr
            )

        receipt = await self.ledger.register_batch(
            crop_type, quantity_kg, base_price_inr, harvest_date, metadata_cid, farmer=farmer or None
        )
        result = RegistrationResult(
            batch_id=receipt.batch_id, tx_hash=receipt.tx_hash, used_fallback=receipt.used_fallback
        )

        if min_price_inr is not None and receipt.batch_id is not None:
            # The batch exists at this point; a failed floor price must not hide its id
            try:
                result.min_price_tx = await self.ledger.set_price(receipt.batch_id, PriceRole.FLOOR, min_price_inr)
            except WriteRejected as exc:
                logger.warning("Batch %s registered but min price was not set: %s", receipt.batch_id, exc)
        return result

    async def transfer(
        self,
        batch_id: int,
        to: str,
        caller: Caller,
        capability: Capability = Capability.SELF_TRANSFER,
    ) -> WriteOutcome:
        if not is_valid_address(to):
            raise ValidationFailed("invalid_to_address")
        self._require_writer()
        await ensure_ledger_target(self.ledger)

        batch = await self.load(batch_id)
        self.policy.authorize_transfer(batch, caller, to, capability)
        if is_same_address(batch.current_owner, to):
            logger.info("Batch %s already held by %s; transfer skipped", batch_id, to)
            return WriteOutcome(batch_id)

        # The relayer signs every write; for a holder it does not represent it relays as verifier
        write_capability = capability
        if not is_same_address(self.ledger.relayer_address, batch.current_owner):
            write_capability = Capability.PRIVILEGED_TRANSFER
        tx_hash = await self.ledger.transfer_ownership(batch_id, to, write_capability)
        return WriteOutcome(batch_id, tx_hash)

    async def set_price(self, batch_id: int, role: PriceRole, amount: int, caller: Caller) -> WriteOutcome:
        if amount is None or amount <= 0:
            raise ValidationFailed("invalid_price")
        self._require_writer()
        await ensure_ledger_target(self.ledger)

        batch = await self.load(batch_id)
        self.policy.authorize_price(batch, caller, role)
        current = {
            PriceRole.FLOOR: batch.min_price_inr,
            PriceRole.DISTRIBUTOR: batch.price_by_distributor_inr,
            PriceRole.RETAILER: batch.price_by_retailer_inr,
        }[role]
        if current == amount:
            logger.info("Batch %s %s price already %s INR; skipped", batch_id, role.value, amount)
            return WriteOutcome(batch_id)

        tx_hash = await self.ledger.set_price(batch_id, role, amount)
        return WriteOutcome(batch_id, tx_hash)
