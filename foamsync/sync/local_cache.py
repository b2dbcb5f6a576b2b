"""Per-user local snapshot, read only when the store is unreachable."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from foamsync.models import OrgSnapshot, utcnow

logger = logging.getLogger(__name__)


class CachedState(BaseModel):
    """What is persisted for one username."""

    snapshot: OrgSnapshot
    # Queue entries that could not even be handed to the store
    outbox: list[dict[str, Any]] = Field(default_factory=list)
    saved_at: str = Field(default_factory=lambda: utcnow().isoformat())


class LocalCache:
    """One JSON document per username under the cache directory."""

    def __init__(self, cache_dir: Path | str):
        self.cache_dir = Path(cache_dir)

    def path_for(self, username: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", username or "anonymous")
        return self.cache_dir / f"{safe}.json"

    def save(self, username: str, state: CachedState) -> None:
        path = self.path_for(username)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(state.model_dump_json(), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            # Cache is a fallback only; a failed write must not break sync
            logger.warning(f"Could not write local cache {path}: {e}")

    def load(self, username: str) -> CachedState | None:
        path = self.path_for(username)
        if not path.exists():
            return None
        try:
            return CachedState.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable local cache {path}: {e}")
            return None

    def clear(self, username: str) -> None:
        self.path_for(username).unlink(missing_ok=True)
