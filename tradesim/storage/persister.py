from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

from tradesim.config import StorageConfig
from tradesim.portfolio.models import Trade
from tradesim.storage.db import get_connection, init_db
from tradesim.storage.journal import TradeJournal
from tradesim.storage.models import TradeRecord

LOGGER = logging.getLogger(__name__)


class TradePersister:
    """Fire-and-forget trade writes on one background thread.

    The record is snapshotted on the caller's thread, so later mutation of the
    open trade cannot leak into what gets written. Write failures are logged and
    dropped; without a journal every call is a no-op.
    """

    def __init__(self, journal: TradeJournal | None):
        self.journal = journal
        self.failures = 0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="trade-persister") if journal else None
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._executor is not None

    def persist_open(self, trade: Trade, mode: str) -> None:
        self._submit("open", TradeRecord.from_trade(trade, mode))

    def persist_close(self, record: Trade, mode: str) -> None:
        self._submit("close", TradeRecord.from_trade(record, mode))

    def _submit(self, kind: str, record: TradeRecord) -> None:
        if self._executor is None:
            return
        try:
            future = self._executor.submit(self._write, kind, record)
        except RuntimeError:
            LOGGER.warning("Trade persister is shut down; dropped %s for %s", kind, record.trade_id)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _write(self, kind: str, record: TradeRecord) -> None:
        journal = self.journal
        if journal is None:
            return
        try:
            if kind == "open":
                journal.save_open(record)
            else:
                journal.save_close(record)
        except Exception as exc:
            self.failures += 1
            LOGGER.warning("Trade persistence failed kind=%s id=%s: %s", kind, record.trade_id, exc)

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        if self._executor is None:
            return
        self.flush()
        self._executor.shutdown(wait=True)
        self._executor = None


def build_persister(storage: StorageConfig, db_path: str | None = None) -> TradePersister:
    if not storage.enabled:
        return TradePersister(None)
    path = db_path or storage.db_path
    try:
        conn = get_connection(path)
        init_db(conn)
    except sqlite3.Error as exc:
        LOGGER.warning("Trade storage unavailable at %s, continuing without it: %s", path, exc)
        return TradePersister(None)
    LOGGER.info("Trade storage enabled db=%s", path)
    return TradePersister(TradeJournal(conn))
