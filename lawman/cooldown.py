"""
Notification Cooldown Guard
===========================

Suppresses repeated calls to a flaky or missing notification endpoint.

Two tiers:
- short (default 60s): any transient failure. Held in memory only, so a
  restart retries right away.
- long (default 24h): the endpoint answered "not found". Also written to a
  durable `CooldownStore`, so it survives a restart.

Only the long tier is persisted. Long entries expire after their window and
operators can clear them with `reset()`; a success clears both tiers.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from .clock import as_naive_utc, utcnow
from .config import Settings, get_settings
from .db.models import CooldownRecord

logger = logging.getLogger(__name__)

DEFAULT_SHORT_WINDOW = timedelta(seconds=60)
DEFAULT_LONG_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class CooldownActive:
    """Marker returned instead of data while an endpoint is cooling down"""
    endpoint_key: str
    until: datetime
    permanent: bool


def is_not_found_failure(error: BaseException) -> bool:
    """True when a failure says the resource does not exist (vs. a network error)."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (404, 410)
    return isinstance(error, (FileNotFoundError, LookupError))


# =============================================================================
# DURABLE STORES
# =============================================================================

class CooldownStore(ABC):
    """Durable key -> until-timestamp record for the long tier"""

    @abstractmethod
    def get(self, key: str) -> Optional[datetime]:
        pass

    @abstractmethod
    def set(self, key: str, until: datetime) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class SqlCooldownStore(CooldownStore):
    """Cooldowns kept in the `cooldowns` table of the service database."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[datetime]:
        db = self._session_factory()
        try:
            record = db.get(CooldownRecord, key)
            return record.until if record else None
        finally:
            db.close()

    def set(self, key: str, until: datetime) -> None:
        db = self._session_factory()
        try:
            record = db.get(CooldownRecord, key)
            if record is None:
                db.add(CooldownRecord(key=key, until=until))
            else:
                record.until = until
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.query(CooldownRecord).filter(CooldownRecord.key == key).delete()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class FileCooldownStore(CooldownStore):
    """
    Cooldowns kept in a small JSON file (client-side persistence).

    Writes go to a temp file that replaces the original, so a crash never
    leaves a half-written timestamp behind.
    """

    def __init__(self, path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Cooldown file {self.path} unreadable, starting empty: {e}")
            return {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".cooldown-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[datetime]:
        with self._lock:
            raw = self._read().get(key)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    def set(self, key: str, until: datetime) -> None:
        with self._lock:
            data = self._read()
            data[key] = until.isoformat()
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)


# =============================================================================
# GUARD
# =============================================================================

class NotificationCooldownGuard:
    """
    Per-endpoint cooldown decisions.

    Two callers racing on the same key may both get past `should_skip`; that
    is accepted. Updates to the stored timestamps are serialized by a lock.
    """

    def __init__(
        self,
        store: Optional[CooldownStore] = None,
        short_window: timedelta = DEFAULT_SHORT_WINDOW,
        long_window: timedelta = DEFAULT_LONG_WINDOW,
    ):
        self.store = store
        self.short_window = short_window
        self.long_window = long_window
        self._short_until: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, store: Optional[CooldownStore] = None, settings: Optional[Settings] = None) -> "NotificationCooldownGuard":
        settings = settings or get_settings()
        return cls(
            store=store,
            short_window=timedelta(seconds=settings.notification_cooldown_seconds),
            long_window=timedelta(seconds=settings.notification_not_found_cooldown_seconds),
        )

    @classmethod
    def persistent(cls, settings: Optional[Settings] = None) -> "NotificationCooldownGuard":
        """Guard whose not-found tier lives in NOTIFICATION_COOLDOWN_FILE."""
        settings = settings or get_settings()
        return cls.from_settings(FileCooldownStore(settings.notification_cooldown_file), settings)

    def should_skip(self, endpoint_key: str, now: Optional[datetime] = None) -> bool:
        return self.active_cooldown(endpoint_key, now) is not None

    def active_cooldown(self, endpoint_key: str, now: Optional[datetime] = None) -> Optional[CooldownActive]:
        """The cooldown currently suppressing `endpoint_key`, if any."""
        now = as_naive_utc(now) or utcnow()

        with self._lock:
            short_until = self._short_until.get(endpoint_key)
            if short_until is not None and short_until <= now:
                del self._short_until[endpoint_key]
                short_until = None

            long_until = self.store.get(endpoint_key) if self.store else None
            if long_until is not None and long_until <= now:
                # Expired: clear it so a recovered endpoint is not stuck
                self.store.delete(endpoint_key)
                long_until = None

        if long_until is not None:
            return CooldownActive(endpoint_key, long_until, permanent=True)
        if short_until is not None:
            return CooldownActive(endpoint_key, short_until, permanent=False)
        return None

    def record_failure(self, endpoint_key: str, is_permanent: bool, now: Optional[datetime] = None) -> datetime:
        """Start a cooldown for `endpoint_key`; returns when it ends."""
        now = as_naive_utc(now) or utcnow()

        with self._lock:
            if is_permanent:
                until = now + self.long_window
                self._short_until[endpoint_key] = until
                if self.store:
                    self.store.set(endpoint_key, until)
            else:
                until = now + self.short_window
                self._short_until[endpoint_key] = max(until, self._short_until.get(endpoint_key, until))

        logger.warning(
            f"Cooldown on {endpoint_key} until {until.isoformat()} "
            f"({'not found' if is_permanent else 'transient failure'})"
        )
        return until

    def record_success(self, endpoint_key: str) -> None:
        with self._lock:
            self._short_until.pop(endpoint_key, None)
            if self.store and self.store.get(endpoint_key) is not None:
                self.store.delete(endpoint_key)

    def reset(self, endpoint_key: str) -> None:
        """Operator override: clear both tiers for an endpoint."""
        self.record_success(endpoint_key)
        logger.info(f"Cooldown on {endpoint_key} cleared")
