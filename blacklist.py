# GoClaw Provider Blacklist
# Providers excluded from bid selection, each with an optional expiry.
# Rows live in the shared database; every write is a single-row atomic upsert
# so concurrent orchestration runs never need a process-wide lock.

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from db import get_engine

log = logging.getLogger("goclaw")

DEFAULT_REASON = "Provider blacklisted"


@dataclass
class BlacklistEntry:
    provider_address: str
    reason: str
    created_at: float
    expires_at: Optional[float] = None

    @property
    def permanent(self):
        return self.expires_at is None

    def is_active(self, now):
        return self.expires_at is None or self.expires_at > now

    def to_dict(self):
        return {
            "provider_address": self.provider_address,
            "reason": self.reason,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "permanent": self.permanent,
        }


class ProviderBlacklist:
    def __init__(self, engine=None, clock=time.time):
        self._engine = engine
        self._clock = clock

    @property
    def engine(self):
        return self._engine or get_engine()

    def is_blacklisted(self, provider) -> bool:
        entry = self.get(provider)
        return entry is not None and entry.is_active(self._clock())

    def add(self, provider, reason=DEFAULT_REASON, expires_at=None):
        """Blacklist a provider, or refresh the reason/expiry of an existing entry.

        expires_at is an absolute epoch timestamp; None means permanent.
        """
        if not provider:
            raise ValueError("provider address is required")
        reason = (reason or DEFAULT_REASON).strip() or DEFAULT_REASON
        now = self._clock()
        with self.engine.transaction() as (conn, backend):
            self.engine.ops.upsert_blacklist(
                conn, provider, reason, now, expires_at, backend=backend
            )
        if expires_at is None:
            log.warning("Provider %s blacklisted permanently: %s", provider, reason)
        else:
            log.warning(
                "Provider %s blacklisted for %.0fs: %s",
                provider, expires_at - now, reason,
            )
        return BlacklistEntry(provider, reason, now, expires_at)

    def add_for(self, provider, reason, cooldown_sec):
        """Temporary blacklist relative to now."""
        return self.add(provider, reason, expires_at=self._clock() + cooldown_sec)

    def get(self, provider) -> Optional[BlacklistEntry]:
        with self.engine.connection() as (conn, backend):
            row = self.engine.ops.get_blacklist_entry(conn, provider, backend=backend)
        return BlacklistEntry(**row) if row else None

    def remove(self, provider) -> bool:
        with self.engine.transaction() as (conn, backend):
            removed = self.engine.ops.delete_blacklist_entry(conn, provider, backend=backend)
        if removed:
            log.info("Provider %s removed from blacklist", provider)
        return removed > 0

    def list_entries(self):
        """Entries currently in force."""
        with self.engine.connection() as (conn, backend):
            rows = self.engine.ops.active_blacklist(conn, self._clock(), backend=backend)
        return [BlacklistEntry(**row) for row in rows]

    def blacklisted_providers(self):
        return {e.provider_address for e in self.list_entries()}

    def cleanup_expired(self) -> int:
        with self.engine.transaction() as (conn, backend):
            removed = self.engine.ops.delete_expired_blacklist(
                conn, self._clock(), backend=backend
            )
        if removed:
            log.info("Blacklist cleanup removed %d expired entries", removed)
        return removed


# ── Singleton ─────────────────────────────────────────────────────────

_blacklist = None
_blacklist_lock = threading.Lock()


def get_blacklist():
    global _blacklist
    if _blacklist is not None:
        return _blacklist
    with _blacklist_lock:
        if _blacklist is None:
            _blacklist = ProviderBlacklist()
        return _blacklist
