"""Per-account bearer credentials for the platform API.

The OAuth consent flow that produces the first credential lives outside this
package; credentials arrive through ``SQLiteCredentialStore.save`` (see the
``credentials add`` CLI command). This module only hands out valid access
tokens, refreshing them through a pluggable ``TokenRefresher``.

Usage:
    provider = CredentialProvider(SQLiteCredentialStore(store), refresher)
    token = provider.get_token("channel-1")
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

import structlog
from pydantic import BaseModel, Field

from .errors import AuthError
from .queue.models import utcnow
from .queue.sqlite_backend import SQLiteStore, to_timestamp

log = structlog.get_logger(__name__)


class Credential(BaseModel):
    """Stored authorization for one account. Never log access/refresh tokens."""

    account_id: str
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_at: Optional[datetime] = Field(default=None, description="None = does not expire")

    def expires_within(self, seconds: float, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= now + timedelta(seconds=seconds)


class TokenRefresher(ABC):
    """Exchanges an expired credential for a fresh one."""

    @abstractmethod
    def refresh(self, credential: Credential) -> Credential:
        """Return the refreshed credential or raise AuthError."""


class RejectingRefresher(TokenRefresher):
    """Default refresher: expired credentials need a new authorization."""

    def refresh(self, credential: Credential) -> Credential:
        raise AuthError(
            f"Authorization for account {credential.account_id} expired; re-authorize the account"
        )


class SQLiteCredentialStore:
    """Credentials table in the shared SQLite database."""

    def __init__(self, store: SQLiteStore):
        self.store = store
        self.db = store.db
        self.lock = store.lock

    def get(self, account_id: str) -> Optional[Credential]:
        with self.lock:
            rows = list(self.db["credentials"].rows_where("account_id = ?", [account_id]))
        if not rows:
            return None
        row = dict(rows[0])
        row.pop("updated_at", None)
        return Credential(**row)

    def save(self, credential: Credential) -> None:
        with self.lock, self.db.conn:
            self.db.conn.execute("""
                INSERT INTO credentials (account_id, access_token, refresh_token, token_type, scope, expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, credentials.refresh_token),
                    token_type = excluded.token_type,
                    scope = excluded.scope,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
            """, (
                credential.account_id,
                credential.access_token,
                credential.refresh_token,
                credential.token_type,
                credential.scope,
                to_timestamp(credential.expires_at),
                to_timestamp(utcnow()),
            ))

    def delete(self, account_id: str) -> bool:
        with self.lock, self.db.conn:
            cursor = self.db.conn.execute("DELETE FROM credentials WHERE account_id = ?", [account_id])
        return cursor.rowcount > 0


class CredentialProvider:
    """Hands out valid bearer tokens, refreshing them single-flight per account.

    Calls for different accounts run concurrently. Concurrent calls for one
    account that all find the token expired trigger a single refresh; the
    others wait on the account lock and reuse the persisted result.
    """

    def __init__(
        self,
        store: SQLiteCredentialStore,
        refresher: Optional[TokenRefresher] = None,
        refresh_skew_s: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.refresher = refresher or RejectingRefresher()
        self.refresh_skew_s = refresh_skew_s
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._invalidated: Set[str] = set()
        self._guard = threading.Lock()

    def get_token(self, account_id: str) -> str:
        """Access token for the account.

        Raises:
            AuthError: No stored authorization, or refresh failed
        """
        credential = self._load(account_id)
        if not self._needs_refresh(credential):
            return credential.access_token

        with self._account_lock(account_id):
            credential = self._load(account_id)
            if not self._needs_refresh(credential):
                return credential.access_token

            log.info("credential_refresh_started", account_id=account_id)
            try:
                refreshed = self.refresher.refresh(credential)
            except AuthError:
                log.error("credential_refresh_rejected", account_id=account_id)
                raise
            except Exception as e:
                log.error("credential_refresh_failed", account_id=account_id, error=str(e))
                raise AuthError(f"Could not refresh authorization for account {account_id}") from e

            self.store.save(refreshed)
            with self._guard:
                self._invalidated.discard(account_id)
            log.info("credential_refreshed", account_id=account_id)
            return refreshed.access_token

    def invalidate(self, account_id: str) -> None:
        """Force a refresh on the next get_token (platform answered 401)."""
        with self._guard:
            self._invalidated.add(account_id)

    def _load(self, account_id: str) -> Credential:
        credential = self.store.get(account_id)
        if credential is None:
            raise AuthError(f"No stored authorization for account {account_id}")
        return credential

    def _needs_refresh(self, credential: Credential) -> bool:
        with self._guard:
            if credential.account_id in self._invalidated:
                return True
        return credential.expires_within(self.refresh_skew_s, self.clock())

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(account_id, threading.Lock())
