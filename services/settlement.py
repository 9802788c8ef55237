"""Payment settlement: turns a confirmed payment into one custody transfer and at most one price-set.

Two delivery paths feed ``SettlementReconciler.settle``:

* push (payment webhook) - gated by a session tracker so duplicate or concurrent deliveries of the
  same session act once; ledger failures are logged and the session is still marked processed.
* pull (client-initiated confirm after re-fetching the payment) - not gated by the tracker so an
  operator can force reconciliation; ledger failures on the transfer are surfaced.

Both paths read current state before writing, so a transfer to the current owner or a price equal
to the stored one is skipped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from services.custody import Caller, CustodyService
from services.errors import AgriTraceError, SignalRejected
from services.ledger import Capability, PriceRole, default_addresses, ensure_ledger_target
from utils import is_valid_address, parse_batch_id, parse_inr_amount

logger = logging.getLogger(__name__)

SETTLEMENT_ROLES = ("distributor", "retailer", "consumer")

# The buyer moving into a role may set the price for the next buyer
DOWNSTREAM_PRICE_ROLE = {
    "distributor": PriceRole.DISTRIBUTOR,
    "retailer": PriceRole.RETAILER,
}


class SignalSource(str, Enum):
    PUSH = "push"
    PULL = "pull"


class SessionState(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    PROCESSED = "processed"


class SettlementStatus(str, Enum):
    SETTLED = "settled"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class SettlementSignal:
    session_id: str
    batch_id: int
    role: str
    destination: str
    price: Optional[int] = None
    source: SignalSource = SignalSource.PUSH


@dataclass
class SettlementOutcome:
    session_id: str
    status: SettlementStatus
    transfer_tx: Optional[str] = None
    price_tx: Optional[str] = None
    message: Optional[str] = None


def build_signal(
    session_id: str,
    batch_id,
    role: Optional[str],
    to_address: Optional[str] = None,
    price=None,
    source: SignalSource = SignalSource.PUSH,
) -> SettlementSignal:
    """Validate raw payment metadata; raises ``SignalRejected`` before any ledger call."""
    if not session_id:
        raise SignalRejected("invalid_session")
    parsed_id = parse_batch_id(batch_id)
    if parsed_id is None:
        raise SignalRejected("invalid_batch_id")

    role = role if role in SETTLEMENT_ROLES else "distributor"
    destination = to_address or default_addresses()[role]
    if not is_valid_address(destination):
        raise SignalRejected("invalid_to_address")

    try:
        amount = parse_inr_amount(price)
    except ValueError:
        # The price-set is optional; a bad note must not block the transfer
        logger.warning("Session %s: ignoring unparseable price %r", session_id, price)
        amount = 0

    return SettlementSignal(
        session_id=session_id,
        batch_id=parsed_id,
        role=role,
        destination=destination,
        price=amount if amount > 0 and role in DOWNSTREAM_PRICE_ROLE else None,
        source=source,
    )


class InMemorySessionTracker:
    """Process-local exactly-once markers for payment sessions.

    A session id is in at most one of in-progress / processed. Entries are never evicted.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._processing: set = set()
        self._processed: set = set()

    async def begin(self, session_id: str) -> SessionState:
        async with self._lock:
            if session_id in self._processed:
                return SessionState.PROCESSED
            if session_id in self._processing:
                return SessionState.IN_PROGRESS
            self._processing.add(session_id)
            return SessionState.NEW

    async def finish(self, session_id: str) -> None:
        async with self._lock:
            self._processing.discard(session_id)
            self._processed.add(session_id)
            self._persist()

    async def state(self, session_id: str) -> SessionState:
        async with self._lock:
            if session_id in self._processed:
                return SessionState.PROCESSED
            if session_id in self._processing:
                return SessionState.IN_PROGRESS
            return SessionState.NEW

    def _persist(self) -> None:
        pass


class FileSessionTracker(InMemorySessionTracker):
    """Tracker whose processed set survives restarts (JSON file, atomic replace)."""

    def __init__(self, state_path: str) -> None:
        super().__init__()
        self.state_path = Path(state_path)
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        if self.state_path.exists():
            try:
                state = json.loads(self.state_path.read_text(encoding="utf-8"))
                self._processed = set(state.get("processed", []))
            except (OSError, ValueError) as exc:
                logger.error("Unreadable settlement state at %s, starting empty: %s", self.state_path, exc)

    def _persist(self) -> None:
        tmp_path = self.state_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps({"processed": sorted(self._processed)}, indent=2), encoding="utf-8")
        tmp_path.replace(self.state_path)


class SettlementReconciler:
    def __init__(self, custody: CustodyService, tracker: Optional[InMemorySessionTracker] = None):
        self.custody = custody
        self.tracker = tracker or InMemorySessionTracker()
        self._batch_locks: Dict[int, asyncio.Lock] = {}

    def _batch_lock(self, batch_id: int) -> asyncio.Lock:
        return self._batch_locks.setdefault(batch_id, asyncio.Lock())

    async def settle(self, signal: SettlementSignal) -> SettlementOutcome:
        if signal.source is SignalSource.PULL:
            return await self._apply(signal)

        state = await self.tracker.begin(signal.session_id)
        if state is SessionState.PROCESSED:
            logger.info("Session %s already processed; duplicate delivery ignored", signal.session_id)
            return SettlementOutcome(signal.session_id, SettlementStatus.SKIPPED)
        if state is SessionState.IN_PROGRESS:
            logger.info("Session %s is being processed by another delivery", signal.session_id)
            return SettlementOutcome(signal.session_id, SettlementStatus.IN_PROGRESS)

        try:
            return await self._apply(signal)
        finally:
            # Attempted counts as terminal; retries go through the pull path
            await self.tracker.finish(signal.session_id)

    async def _apply(self, signal: SettlementSignal) -> SettlementOutcome:
        push = signal.source is SignalSource.PUSH
        ledger = self.custody.ledger
        outcome = SettlementOutcome(signal.session_id, SettlementStatus.SETTLED)

        if push:
            try:
                if not ledger.can_write:
                    raise AgriTraceError("relayer_not_configured")
                await ensure_ledger_target(ledger)
            except AgriTraceError as exc:
                logger.warning("Session %s: skipping on-chain settlement: %s", signal.session_id, exc)
                outcome.status = SettlementStatus.DEFERRED
                outcome.message = str(exc)
                return outcome

        relayer = Caller.verifier(ledger.relayer_address)
        async with self._batch_lock(signal.batch_id):
            try:
                transfer = await self.custody.transfer(
                    signal.batch_id, signal.destination, relayer, Capability.PRIVILEGED_TRANSFER
                )
                outcome.transfer_tx = transfer.tx_hash
            except AgriTraceError as exc:
                if not push:
                    raise
                logger.warning(
                    "Session %s: transfer of batch %s to %s failed: %s",
                    signal.session_id, signal.batch_id, signal.destination, exc,
                )
                outcome.message = f"transfer_failed: {exc}"

            price_role = DOWNSTREAM_PRICE_ROLE.get(signal.role)
            if signal.price and price_role is not None:
                try:
                    price = await self.custody.set_price(signal.batch_id, price_role, signal.price, relayer)
                    outcome.price_tx = price.tx_hash
                except AgriTraceError as exc:
                    logger.warning(
                        "Session %s: optional %s price update failed: %s",
                        signal.session_id, price_role.value, exc,
                    )

        logger.info(
            "Session %s settled batch %s -> %s (%s, transfer_tx=%s, price_tx=%s)",
            signal.session_id, signal.batch_id, signal.destination, signal.source.value,
            outcome.transfer_tx, outcome.price_tx,
        )
        return outcome
