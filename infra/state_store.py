"""
Infrastructure: Ledger State Store

Durable key-value persistence for positions, limit orders, DCA orders and
pending sells, plus a best-effort writer for high-frequency advisory
fields (current price / profit).

Layout on disk: one JSON file per collection under the data directory,
``{key: record}``. Every write goes to a temp file that is renamed over the
target, so a crash never leaves a half-written collection.
"""

import json
import logging
import os
import tempfile
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.interfaces import LedgerStore

logger = logging.getLogger(__name__)

COLLECTIONS = ("positions", "limit_orders", "dca_orders", "pending_sells")


class InMemoryLedgerStore(LedgerStore):
    """Process-local store. Used in DRY_RUN mode and tests."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data.get(collection, {}).get(key)
            return deepcopy(record) if record is not None else None

    def put(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[key] = deepcopy(record)

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._data.get(collection, {}).pop(key, None)

    def scan(self, collection: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._data.get(collection, {}).values())
        return [deepcopy(r) for r in records if status is None or r.get("status") == status]


class JsonLedgerStore(LedgerStore):
    """
    JSON-file backed store with atomic writes.

    Features:
    - One file per collection (``<data_dir>/<collection>.json``)
    - Atomic writes (temp file + rename)
    - Thread-safe operations
    """

    def __init__(self, data_dir: str = "data/ledger"):
        """
        Initialize store.

        Args:
            data_dir: Directory holding the collection files
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        logger.info(f"Initialized JsonLedgerStore at {self.data_dir}")

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _load(self, collection: str) -> Dict[str, Dict[str, Any]]:
        if collection in self._cache:
            return self._cache[collection]
        path = self._path(collection)
        records: Dict[str, Dict[str, Any]] = {}
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                records = data
            else:
                logger.warning(f"Invalid format in {path}, starting empty")
        self._cache[collection] = records
        return records

    def _save(self, collection: str, records: Dict[str, Dict[str, Any]]) -> None:
        path = self._path(collection)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.data_dir,
            prefix=f".{collection}_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, default=str)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._load(collection).get(key)
            return deepcopy(record) if record is not None else None

    def put(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        with self._lock:
            records = dict(self._load(collection))
            records[key] = deepcopy(record)
            self._save(collection, records)
            self._cache[collection] = records

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            records = self._load(collection)
            if key not in records:
                return
            records = {k: v for k, v in records.items() if k != key}
            self._save(collection, records)
            self._cache[collection] = records

    def scan(self, collection: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._load(collection).values())
        return [deepcopy(r) for r in records if status is None or r.get("status") == status]


class BestEffortWriter:
    """
    Coalescing background writer for advisory, high-frequency fields.

    ``submit()`` only records the latest value per (collection, key) and
    returns immediately; a single worker thread flushes pending records
    every ``flush_interval`` seconds. A durable copy may therefore lag the
    in-memory value by up to one flush interval (plus write time). Write
    failures are logged and reported to ``on_failure``, never raised.
    """

    def __init__(
        self,
        store: LedgerStore,
        flush_interval: float = 2.0,
        on_failure: Optional[Callable[[str, str, Exception], None]] = None,
    ):
        self.store = store
        self.flush_interval = max(0.05, float(flush_interval))
        self._on_failure = on_failure
        self._pending: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._io_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.failures = 0

    @property
    def staleness_bound_seconds(self) -> float:
        return self.flush_interval

    def submit(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._pending[(collection, key)] = deepcopy(record)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def write_through(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        """
        Synchronous write that supersedes anything queued for the same key.

        Serialized with flush() so an older queued record can never land
        after this one. Store errors propagate to the caller.
        """
        with self._io_lock:
            with self._lock:
                self._pending.pop((collection, key), None)
            self.store.put(collection, key, record)

    def flush(self) -> int:
        """Write everything queued so far. Returns number of records written."""
        with self._io_lock:
            with self._lock:
                batch = self._pending
                self._pending = {}

            written = 0
            for (collection, key), record in batch.items():
                try:
                    self.store.put(collection, key, record)
                    written += 1
                except Exception as e:
                    self.failures += 1
                    logger.warning(f"Best-effort write failed for {collection}/{key}: {e}")
                    if self._on_failure:
                        self._on_failure(collection, key, e)
            return written

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="best-effort-writer", daemon=True)
        self._thread.start()
        logger.info(f"Best-effort writer started (staleness bound {self.flush_interval:.1f}s)")

    def stop(self, flush: bool = True) -> None:
        self._stop.set()
        if flush:
            self.flush()

    def _run(self) -> None:
        while not self._stop.wait(self.flush_interval):
            self.flush()


def create_ledger_store(config: Optional[Dict[str, Any]] = None) -> LedgerStore:
    """
    Build the ledger store described by the ``store`` section of app.yaml.

    Args:
        config: {"backend": "json" | "memory", "data_dir": "..."}
    """
    config = config or {}
    backend = str(config.get("backend", "json")).lower()
    if backend == "memory":
        logger.info("Using in-memory ledger store (state is lost on restart)")
        return InMemoryLedgerStore()
    if backend == "json":
        return JsonLedgerStore(config.get("data_dir", "data/ledger"))
    raise ValueError(f"Unknown ledger store backend: {backend}")
