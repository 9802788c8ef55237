"""Read-side projection of batches for the UI.

``get_batch`` reads the contract struct only and fails fast. ``list_batches`` tolerates partial
deployments: ids come from ``getAllBatchIds`` or, failing that, from ``BatchRegistered`` logs, and
an id whose struct read fails is rebuilt from its last registration event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from services.custody import (
    HolderRole,
    decode_inline_metadata,
    holder_role,
    resolve_min_price,
    role_addresses,
)
from services.errors import LedgerReadFailed, NotFound
from services.ledger import (
    BatchRecord,
    LedgerClient,
    RegistrationEvent,
    default_addresses,
    ensure_ledger_target,
)

logger = logging.getLogger(__name__)

SOURCE_CONTRACT = "contract"
SOURCE_EVENT = "event"


@dataclass
class BatchView:
    record: BatchRecord
    holder_role: HolderRole
    source: str = SOURCE_CONTRACT

    @property
    def dates(self) -> Dict[str, int]:
        r = self.record
        return {
            "harvest": r.harvest_date,
            "created": r.created_at,
            "boughtByDistributor": r.bought_by_distributor_at,
            "boughtByRetailer": r.bought_by_retailer_at,
            "boughtByConsumer": r.bought_by_consumer_at,
        }

    @property
    def prices(self) -> Dict[str, int]:
        r = self.record
        return {
            "baseINR": r.base_price_inr,
            "minINR": r.min_price_inr,
            "byDistributorINR": r.price_by_distributor_inr,
            "byRetailerINR": r.price_by_retailer_inr,
        }


def build_view(record: BatchRecord, source: str = SOURCE_CONTRACT) -> BatchView:
    """Normalize role slots and the price floor, then attach the derived holder role."""
    roles = role_addresses(record)
    normalized = replace(
        record,
        farmer=roles[HolderRole.FARMER],
        distributor=roles[HolderRole.DISTRIBUTOR],
        retailer=roles[HolderRole.RETAILER],
        consumer=roles[HolderRole.CONSUMER],
        min_price_inr=resolve_min_price(record),
    )
    return BatchView(record=normalized, holder_role=holder_role(normalized), source=source)


def patch_from_inline_metadata(record: BatchRecord) -> None:
    meta = decode_inline_metadata(record.metadata_cid)
    if not meta:
        return
    try:
        if meta.get("cropType") and not record.crop_type:
            record.crop_type = str(meta["cropType"])
        if meta.get("quantityKg") and not record.quantity_kg:
            record.quantity_kg = int(meta["quantityKg"])
        if meta.get("basePriceINR") and not record.base_price_inr:
            record.base_price_inr = int(meta["basePriceINR"])
        if meta.get("harvestDate") and not record.harvest_date:
            record.harvest_date = int(meta["harvestDate"])
        if meta.get("minPriceINR") and not record.min_price_inr:
            record.min_price_inr = int(meta["minPriceINR"])
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring malformed inline metadata on batch %s: %s", record.id, exc)


def is_sparse(record: BatchRecord) -> bool:
    return not record.crop_type or not record.quantity_kg or not record.base_price_inr or not record.harvest_date


def overlay_event(record: BatchRecord, event: RegistrationEvent) -> None:
    if not record.crop_type and event.crop_type:
        record.crop_type = event.crop_type
    if not record.quantity_kg and event.quantity_kg:
        record.quantity_kg = event.quantity_kg
    if not record.base_price_inr and event.base_price_inr:
        record.base_price_inr = event.base_price_inr
    if not record.harvest_date and event.harvest_date:
        record.harvest_date = event.harvest_date
    if not record.metadata_cid and event.metadata_cid:
        record.metadata_cid = event.metadata_cid
    if not record.created_at and event.timestamp:
        record.created_at = event.timestamp


def record_from_event(event: RegistrationEvent) -> BatchRecord:
    defaults = default_addresses()
    farmer = event.farmer or defaults["farmer"]
    return BatchRecord(
        id=event.batch_id,
        current_owner=farmer,
        farmer=farmer,
        distributor=defaults["distributor"],
        retailer=defaults["retailer"],
        consumer=defaults["consumer"],
        crop_type=event.crop_type,
        quantity_kg=event.quantity_kg,
        base_price_inr=event.base_price_inr,
        harvest_date=event.harvest_date,
        metadata_cid=event.metadata_cid,
        created_at=event.timestamp,
        exists=True,
    )


class _EventIndex:
    """Registration events fetched at most once per listing, last event per id wins."""

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger
        self._lock = asyncio.Lock()
        self._by_id: Optional[Dict[int, RegistrationEvent]] = None
        self._ordered_ids: List[int] = []

    async def load(self) -> Dict[int, RegistrationEvent]:
        async with self._lock:
            if self._by_id is None:
                by_id: Dict[int, RegistrationEvent] = {}
                ordered: List[int] = []
                try:
                    events = await self.ledger.read_registration_events()
                except LedgerReadFailed as exc:
                    logger.warning("Registration event query failed: %s", exc)
                    events = []
                for event in events:
                    if event.batch_id not in by_id:
                        ordered.append(event.batch_id)
                    by_id[event.batch_id] = event
                self._by_id = by_id
                self._ordered_ids = ordered
            return self._by_id

    async def ids(self) -> List[int]:
        await self.load()
        return list(self._ordered_ids)

    async def last(self, batch_id: int) -> Optional[RegistrationEvent]:
        return (await self.load()).get(batch_id)


class BatchRegistry:
    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def get_batch(self, batch_id: int) -> BatchView:
        await ensure_ledger_target(self.ledger)
        try:
            record = await self.ledger.read_batch(batch_id)
        except LedgerReadFailed as exc:
            # No event scan for single reads; fail fast
            raise NotFound(f"batch {batch_id} not found") from exc
        if not record.exists:
            raise NotFound(f"batch {batch_id} not found")
        patch_from_inline_metadata(record)
        return build_view(record)

    async def list_batches(self) -> List[BatchView]:
        await ensure_ledger_target(self.ledger)
        index = _EventIndex(self.ledger)
        try:
            ids = await self.ledger.read_all_ids()
        except LedgerReadFailed as exc:
            logger.info("getAllBatchIds unavailable (%s); deriving ids from BatchRegistered events", exc)
            ids = await index.ids()

        views = await asyncio.gather(*(self._project(batch_id, index) for batch_id in ids))
        return [view for view in views if view is not None]

    async def _project(self, batch_id: int, index: _EventIndex) -> Optional[BatchView]:
        try:
            record = await self.ledger.read_batch(batch_id)
        except LedgerReadFailed as exc:
            logger.warning("Struct read failed for batch %s: %s", batch_id, exc)
            record = None

        if record is not None and record.exists:
            if is_sparse(record):
                event = await index.last(batch_id)
                if event is not None:
                    overlay_event(record, event)
            return build_view(record)

        event = await index.last(batch_id)
        if event is None:
            logger.warning("Batch %s has neither a readable struct nor a registration event; skipped", batch_id)
            return None
        return build_view(record_from_event(event), source=SOURCE_EVENT)
