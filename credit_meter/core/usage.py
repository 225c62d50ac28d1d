"""
Best-effort usage audit log.

Usage records are written on a small thread pool after the ledger transaction
has committed. A failed write is logged and dropped; it never reaches the
caller of the charge and never touches the ledger.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import List, Optional, Set

from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageRecord
from ..storage.repository import fetch_recent_usage_records, insert_usage_record

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Fire-and-forget writer for UsageRecord rows."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, max_workers: int = 2):
        self.db_path = db_path
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="usage-recorder")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def _write(self, record: UsageRecord) -> Optional[str]:
        try:
            return insert_usage_record(record, self.db_path)
        except Exception:
            logger.exception(
                "Failed to write usage record for account %s (%s, %s)",
                record.account_id, record.service_type, record.model,
            )
            return None

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def record(self, record: UsageRecord) -> Future:
        """Queue a usage record and return immediately.

        The returned future resolves to the record id, or None if the write
        failed.
        """
        try:
            future = self._executor.submit(self._write, record)
        except RuntimeError:
            # executor already shut down
            logger.warning("Usage recorder is closed, dropping record for account %s", record.account_id)
            future = Future()
            future.set_result(None)
            return future
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued writes to finish."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def list_usage(self, account_id: Optional[str] = None, limit: int = 100) -> List[UsageRecord]:
        return fetch_recent_usage_records(account_id=account_id, limit=limit, db_path=self.db_path)
