# crm_sync/clients/renderer.py
"""
Document renderer. Writes each rendered document as JSON under
DOCUMENTS_DIR and returns the URL it is served from; turning that into a
PDF is somebody else's job.
"""
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict


class DocumentRenderer:
    def __init__(self, documents_dir: str, base_url: str, *, company: Dict[str, Any] | None = None,
                 app_base_url: str = ""):
        self.root = Path(documents_dir)
        self.base_url = base_url.rstrip("/")
        self.company = company or {}
        self.app_base_url = app_base_url.rstrip("/")

    def _write(self, folder: str, name: str, doc: Dict[str, Any]) -> str:
        target = self.root / folder
        target.mkdir(parents=True, exist_ok=True)
        body = {"renderedAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), **doc}
        (target / f"{name}.json").write_text(json.dumps(body, ensure_ascii=False, indent=2), encoding="utf-8")
        return f"{self.base_url}/{folder}/{name}.json"

    async def render_delivery_note(self, note: Dict[str, Any]) -> str:
        return self._write("deliveryNotes", note["id"], {"company": self.company, **note})

    async def render_pallet_label(self, spec: Dict[str, Any]) -> str:
        shipment_id = spec["shipmentId"]
        doc = {
            "title": "PALET",
            "qrText": f"{self.app_base_url}/shipments/{shipment_id}",
            **spec,
        }
        return self._write("labels/pallet", shipment_id, doc)
