"""Human-verification queue persisted as a flat JSON list."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from services.errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

DECISIONS = ("approved", "rejected", "pending")
_ID_ALPHABET = string.ascii_lowercase + string.digits
_AADHAAR_MASK = re.compile(r"\d(?=\d{4})")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _new_item_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"VERI-{int(time.time() * 1000)}-{suffix}"


def mask_aadhaar(value: Any) -> str:
    """Replace every digit except the last four with ``X``."""
    return _AADHAAR_MASK.sub("X", str(value or ""))


class ModerationQueue:
    def __init__(self, state_path: str) -> None:
        self.state_path = Path(state_path)
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._items: List[Dict[str, Any]] = []
        self._load_state()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load_state(self) -> None:
        if not self.state_path.exists():
            return
        try:
            items = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Unreadable moderation queue at %s, starting empty: %s", self.state_path, exc)
            return
        self._items = items if isinstance(items, list) else []

    def _write_state(self) -> None:
        tmp_path = self.state_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._items, indent=2), encoding="utf-8")
        tmp_path.replace(self.state_path)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------
    async def enqueue(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            item = {
                **{k: v for k, v in record.items() if v is not None},
                "id": _new_item_id(),
                "status": "pending",
                "createdAt": _utc_now(),
            }
            self._items.append(item)
            self._write_state()
            logger.info("Queued %s for batch %s", item["id"], item.get("batchId"))
            return dict(item)

    async def list_items(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            return [dict(item) for item in self._items if not status or item.get("status") == status]

    async def get(self, item_id: str) -> Dict[str, Any]:
        async with self._lock:
            for item in self._items:
                if item.get("id") == item_id:
                    return dict(item)
        raise NotFound(f"queue item {item_id} not found")

    async def decide(self, item_id: str, decision: str, notes: Optional[str] = None) -> Dict[str, Any]:
        if decision not in DECISIONS:
            raise ValidationFailed("invalid_decision")
        async with self._lock:
            item = next((entry for entry in self._items if entry.get("id") == item_id), None)
            if item is None:
                raise NotFound(f"queue item {item_id} not found")
            # Re-deciding is allowed; decidedAt keeps the first decision time
            item["status"] = decision
            if notes:
                item["notes"] = notes
            item.setdefault("decidedAt", _utc_now())
            self._write_state()
            logger.info("Queue item %s -> %s", item_id, decision)
            return dict(item)


async def submit_verification(
    queue: ModerationQueue,
    *,
    farmer_aadhaar: str,
    estimated_quantity: int,
    sample_weight: float,
    quality_grade: str,
    moisture_content: Optional[float] = None,
    verification_center_id: Optional[str] = None,
    verifier_photo: Optional[str] = None,
    testing_notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a verification-centre inspection and queue it for a moderator."""
    digits = str(farmer_aadhaar or "").strip()
    if not digits or not estimated_quantity or not sample_weight or not quality_grade:
        raise ValidationFailed("Missing required verification data")

    masked = mask_aadhaar(digits)
    verification_data = {
        "farmerAadhaar": masked,
        "estimatedQuantity": int(estimated_quantity),
        "sampleWeight": float(sample_weight),
        "qualityGrade": quality_grade,
        "moistureContent": float(moisture_content) if moisture_content is not None else None,
        "verificationCenterId": verification_center_id,
        "timestamp": _utc_now(),
        "verifierPhoto": verifier_photo,
        "testingNotes": testing_notes,
        "status": "verified",
    }
    batch_id = f"OD2025-{digits[-4:]}-{int(time.time() * 1000)}"
    item = await queue.enqueue({
        "batchId": batch_id,
        "farmerAadhaar": masked,
        "summary": f"Grade {quality_grade}, Qty {estimated_quantity}",
    })
    return {"batchId": batch_id, "verificationData": verification_data, "item": item}
