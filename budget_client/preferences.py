from __future__ import annotations

import logging

from sqlalchemy import Column, DateTime, MetaData, String, Table, func, insert, select, update
from sqlalchemy.engine import Engine

from budget_client.currency_conversion import ensure_supported_currency

logger = logging.getLogger(__name__)

PREFERRED_CURRENCY_KEY = "preferredCurrency"

metadata = MetaData()

client_preferences = Table(
    "client_preferences",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", String(255), nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


class PreferenceStore:
    """Display currency preference that survives restarts.

    The active currency starts at ``default_currency``, is replaced by the
    stored preference when one exists, and is overridden by the user's
    profile currency each time that profile value changes.
    """

    def __init__(self, engine: Engine, default_currency: str = "EUR") -> None:
        self._engine = engine
        self._default_currency = ensure_supported_currency(default_currency)
        self._last_profile_currency: str | None = None
        metadata.create_all(engine)
        self._currency = self._load_stored_currency() or self._default_currency

    def get_display_currency(self) -> str:
        return self._currency

    def set_display_currency(self, currency: str) -> str:
        normalized = ensure_supported_currency(currency)
        self._save(PREFERRED_CURRENCY_KEY, normalized)
        self._currency = normalized
        return normalized

    def sync_profile_currency(self, currency: str | None) -> bool:
        """Apply the profile currency once per change of the profile value.

        Returns True when the display currency was updated.
        """
        if not currency or currency == self._last_profile_currency:
            return False
        self._last_profile_currency = currency
        try:
            normalized = ensure_supported_currency(currency)
        except ValueError:
            logger.warning("Ignoring unsupported profile currency %r", currency)
            return False
        if normalized == self._currency:
            return False
        logger.info("Display currency synchronized from profile: %s", normalized)
        self.set_display_currency(normalized)
        return True

    def _load_stored_currency(self) -> str | None:
        with self._engine.begin() as conn:
            stored = conn.execute(
                select(client_preferences.c.value).where(
                    client_preferences.c.key == PREFERRED_CURRENCY_KEY
                )
            ).scalar_one_or_none()
        if not stored:
            return None
        try:
            return ensure_supported_currency(stored)
        except ValueError:
            logger.warning("Ignoring stored currency preference %r", stored)
            return None

    def _save(self, key: str, value: str) -> None:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(client_preferences)
                .where(client_preferences.c.key == key)
                .values(value=value, updated_at=func.now())
            )
            if result.rowcount == 0:
                conn.execute(insert(client_preferences).values(key=key, value=value))
