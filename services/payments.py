"""Razorpay adapter: checkout orders, webhook verification, and order -> settlement signal."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import razorpay
from razorpay.errors import SignatureVerificationError

from services.errors import SignalRejected, ValidationFailed
from services.settlement import SettlementSignal, SignalSource, build_signal
from utils import is_valid_address

logger = logging.getLogger(__name__)

MIN_ORDER_PAISE = 100

# Which note carries the downstream price a buyer in this role may set
PRICE_NOTE_FOR_ROLE = {
    "distributor": "distributorPriceINR",
    "retailer": "consumerPriceINR",
}


class PaymentGatewayNotConfigured(RuntimeError):
    pass


def signal_from_order(
    order: Dict[str, Any],
    source: SignalSource = SignalSource.PUSH,
    to_address_override: Optional[str] = None,
    batch_id_override=None,
) -> SettlementSignal:
    """Build a settlement signal from an order entity and the notes attached at checkout."""
    notes = order.get("notes") or {}
    if isinstance(notes, list):
        # Razorpay serializes empty notes as []
        notes = {}
    role = notes.get("role")
    to_address = notes.get("toAddress") or None
    if to_address_override and is_valid_address(to_address_override):
        to_address = to_address_override
    # The paid order is bound to its own batch; the override only fills a missing note
    batch_id = notes.get("batchId")
    if batch_id in (None, "") and batch_id_override is not None:
        batch_id = batch_id_override
    return build_signal(
        session_id=order.get("id", ""),
        batch_id=batch_id,
        role=role,
        to_address=to_address,
        price=notes.get(PRICE_NOTE_FOR_ROLE.get(role, ""), None),
        source=source,
    )


class PaymentGateway:
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "", client: Optional[Any] = None):
        self.webhook_secret = webhook_secret
        self.client = client
        if self.client is None and key_id and key_secret:
            self.client = razorpay.Client(auth=(key_id, key_secret))

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _require_client(self):
        if self.client is None:
            raise PaymentGatewayNotConfigured("Razorpay client is not configured")
        return self.client

    async def create_order(
        self,
        *,
        batch_id: int,
        role: str,
        amount_paise: int,
        to_address: Optional[str] = None,
        distributor_price_inr: Optional[int] = None,
        consumer_price_inr: Optional[int] = None,
        currency: str = "INR",
    ) -> Dict[str, Any]:
        amount_paise = max(MIN_ORDER_PAISE, int(amount_paise or 0))
        if to_address and not is_valid_address(to_address):
            raise ValidationFailed("invalid_to_address")
        client = self._require_client()

        notes = {"batchId": str(batch_id), "role": role}
        if to_address:
            notes["toAddress"] = to_address
        if distributor_price_inr:
            notes["distributorPriceINR"] = str(distributor_price_inr)
        if consumer_price_inr:
            notes["consumerPriceINR"] = str(consumer_price_inr)

        order = await asyncio.to_thread(
            client.order.create,
            {
                "amount": int(amount_paise),
                "currency": currency,
                "payment_capture": 1,
                "notes": notes,
            },
        )
        logger.info("Created Razorpay order %s for batch %s (%s)", order.get("id"), batch_id, role)
        return order

    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return await asyncio.to_thread(client.order.fetch, order_id)

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature over the raw body and return the decoded event."""
        if not self.webhook_secret:
            raise PaymentGatewayNotConfigured("Razorpay webhook secret is not configured")
        if not signature:
            raise SignalRejected("missing_signature")
        client = self.client or razorpay.Client(auth=("", ""))
        payload = body.decode("utf-8")
        try:
            client.utility.verify_webhook_signature(payload, signature, self.webhook_secret)
        except SignatureVerificationError as exc:
            raise SignalRejected("invalid_signature") from exc
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise SignalRejected("invalid_payload") from exc

    @staticmethod
    def paid_order(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Order entity of an ``order.paid`` event, else None."""
        if event.get("event") != "order.paid":
            return None
        return ((event.get("payload") or {}).get("order") or {}).get("entity")
