"""Persistent receipt cache for resumable runs.

Receipts are keyed by (image id, digest of the exact stage input).  A
resumed run with identical input reuses the stored receipt instead of
calling the prover again; anything missing is regenerated.

Usage::

    cache = ReceiptCache(ReceiptCacheConfig(path="receipts.json"))
    cache.load()
    receipt = cache.get(image_id, payload)
    if receipt is None:
        receipt = prover.generate(image_id, payload)
        cache.put(image_id, payload, receipt)
        cache.save()
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from reserve_engine.framework.prover import Receipt, input_digest

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceiptCacheConfig:
    """Configuration for the receipt cache.

    Parameters
    ----------
    path:
        JSON file holding the cache. Default "receipts.json".
    max_entries:
        Oldest entries are dropped beyond this. Default 1000.
    """

    path: str = "receipts.json"
    max_entries: int = 1000


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class CachedReceipt:
    receipt: Receipt
    stored_at: float


class ReceiptCache:
    """Image-id + input-digest -> receipt, persisted as JSON."""

    def __init__(self, config: ReceiptCacheConfig | None = None) -> None:
        self._config = config or ReceiptCacheConfig()
        self._entries: Dict[str, CachedReceipt] = {}

    @property
    def config(self) -> ReceiptCacheConfig:
        return self._config

    @staticmethod
    def key(image_id: str, payload: Any) -> str:
        return f"{image_id}:{input_digest(payload)}"

    def get(self, image_id: str, payload: Any) -> Optional[Receipt]:
        entry = self._entries.get(self.key(image_id, payload))
        return None if entry is None else entry.receipt

    def put(self, image_id: str, payload: Any, receipt: Receipt, now: float | None = None) -> None:
        if now is None:
            now = time.time()
        self._entries[self.key(image_id, payload)] = CachedReceipt(receipt=receipt, stored_at=now)
        if len(self._entries) > self._config.max_entries:
            self._evict()

    def discard(self, image_id: str, payload: Any) -> bool:
        return self._entries.pop(self.key(image_id, payload), None) is not None

    def _evict(self) -> None:
        ordered = sorted(self._entries, key=lambda k: self._entries[k].stored_at)
        for k in ordered[: len(self._entries) - self._config.max_entries]:
            del self._entries[k]

    def save(self) -> str:
        """Write the cache atomically; returns the path."""
        path = Path(self._config.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = {
            "saved_at": time.time(),
            "entries": {
                key: {"receipt": entry.receipt.to_dict(), "stored_at": entry.stored_at}
                for key, entry in self._entries.items()
            },
        }
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(snapshot, f)
        os.replace(tmp, path)
        return str(path)

    def load(self) -> int:
        """Load entries from disk; returns how many were loaded.

        An unreadable file is logged and treated as empty.
        """
        path = self._config.path
        if not os.path.exists(path):
            return 0
        try:
            with open(path, encoding="utf-8") as f:
                snapshot = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            LOGGER.warning("ignoring unreadable receipt cache path=%s error=%s", path, exc)
            return 0

        loaded = 0
        for key, data in snapshot.get("entries", {}).items():
            try:
                receipt = Receipt.from_dict(data["receipt"])
            except (KeyError, TypeError):
                continue
            self._entries[key] = CachedReceipt(receipt=receipt, stored_at=float(data.get("stored_at", 0.0)))
            loaded += 1
        LOGGER.info("receipt cache loaded path=%s entries=%d", path, loaded)
        return loaded

    def entry_count(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()
