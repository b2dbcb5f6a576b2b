"""Cheap change detection for the coordinator-owned slice of state."""

from __future__ import annotations

import hashlib
import json

from foamsync.models import OrgSettings, WarehouseStock


def sync_fingerprint(settings: OrgSettings, stock: WarehouseStock) -> str:
    """SHA-256 over canonical JSON of settings, pricing, usage and counters.

    Job records are written individually and are not part of it.
    """
    document = {
        "settings": settings.model_dump(mode="json"),
        "stock": {
            "open_cell_sets": stock.open_cell_sets,
            "closed_cell_sets": stock.closed_cell_sets,
        },
    }
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()
