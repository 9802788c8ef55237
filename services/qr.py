"""QR codes pointing consumers at a batch's public trace page."""

from __future__ import annotations

import base64
import io
from pathlib import Path
from typing import Dict, Optional

import qrcode


class QRService:
    def __init__(self, public_base_url: str, cache_dir: Optional[str] = None):
        self.public_base_url = public_base_url.rstrip("/")
        self.cache_dir = Path(cache_dir) if cache_dir else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def trace_url(self, batch_id: int) -> str:
        return f"{self.public_base_url}/?batch={batch_id}"

    def generate(self, batch_id: int) -> Dict[str, str]:
        url = self.trace_url(batch_id)

        cache_path = self.cache_dir / f"batch_{batch_id}.png" if self.cache_dir else None
        if cache_path is not None and cache_path.exists():
            png = cache_path.read_bytes()
        else:
            qr_img = qrcode.make(url)
            buffer = io.BytesIO()
            qr_img.save(buffer, format="PNG")
            png = buffer.getvalue()
            if cache_path is not None:
                cache_path.write_bytes(png)

        return {
            "batchId": str(batch_id),
            "url": url,
            "qrImageBase64": base64.b64encode(png).decode("ascii"),
        }
