"""
Token to credit ratio storage.

The ratio lives in a single settings row (id = 1). It is lazily created with
the configured default and is only ever upserted, never deleted.
"""

import logging
import math
from numbers import Real

from .errors import InvalidRatio
from ..storage.db import DEFAULT_DB_PATH, get_connection
from ..storage.repository import insert_ratio_if_absent, select_ratio, upsert_ratio

logger = logging.getLogger(__name__)

SETTINGS_ID = 1


def _validate_ratio(ratio) -> float:
    if isinstance(ratio, bool) or not isinstance(ratio, Real):
        raise InvalidRatio(ratio)
    value = float(ratio)
    if not math.isfinite(value) or value <= 0:
        raise InvalidRatio(ratio)
    return value


class RatioStore:
    """Holds the single global token->credit conversion ratio."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, default_ratio: float = 1.0, timeout: float = 30.0):
        self.db_path = db_path
        self.default_ratio = _validate_ratio(default_ratio)
        self.timeout = timeout

    def _normalize(self, stored) -> float:
        try:
            return _validate_ratio(float(stored))
        except (TypeError, ValueError):
            logger.warning("Stored token_to_credit_ratio %r is invalid, using default %s", stored, self.default_ratio)
            return self.default_ratio

    def get(self) -> float:
        """Return the current ratio, creating the settings row if absent."""
        conn = get_connection(self.db_path, timeout=self.timeout)
        try:
            stored = select_ratio(conn, SETTINGS_ID)
            if stored is None:
                insert_ratio_if_absent(conn, self.default_ratio, SETTINGS_ID)
                stored = select_ratio(conn, SETTINGS_ID)
            return self._normalize(stored)
        finally:
            conn.close()

    def set(self, ratio) -> float:
        """Upsert a new ratio.

        Raises:
            InvalidRatio: If ratio is not a finite number > 0
        """
        value = _validate_ratio(ratio)
        conn = get_connection(self.db_path, timeout=self.timeout)
        try:
            upsert_ratio(conn, value, SETTINGS_ID)
        finally:
            conn.close()
        logger.info("token_to_credit_ratio set to %s", value)
        return value
