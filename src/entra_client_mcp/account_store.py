"""Account and access-token store.

One instance is shared by the whole process. Accounts keep insertion order;
tokens are keyed by (account, scope set) and the last successful write wins.
When a snapshot path is configured the store survives the redirect round-trip
and process restarts (the equivalent of browser session storage).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from .models import Account, Token

logger = logging.getLogger(__name__)

TokenKey = tuple[str, frozenset[str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStore:
    """Thread-safe in-memory store with optional JSON snapshot."""

    def __init__(
        self,
        *,
        snapshot_path: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._snapshot_path = snapshot_path
        self._clock = clock
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] = {}
        self._tokens: dict[TokenKey, Token] = {}
        if snapshot_path is not None:
            self._load()

    def list_accounts(self) -> list[Account]:
        with self._lock:
            return list(self._accounts.values())

    def get_account(self, key: str) -> Account | None:
        with self._lock:
            return self._accounts.get(key)

    def add_or_replace(self, account: Account) -> None:
        with self._lock:
            self._accounts[account.key] = account
            self._save()
        logger.info("Account stored (accounts=%s)", len(self._accounts))

    def remove(self, key: str) -> None:
        with self._lock:
            self._accounts.pop(key, None)
            for token_key in [k for k in self._tokens if k[0] == key]:
                del self._tokens[token_key]
            self._save()

    def clear(self) -> None:
        with self._lock:
            self._accounts.clear()
            self._tokens.clear()
            self._save()
        logger.info("Account store cleared")

    def put_token(self, token: Token) -> None:
        """Store a token under (account, scope set); replaces any previous entry."""
        with self._lock:
            if token.account.key not in self._accounts:
                self._accounts[token.account.key] = token.account
            self._tokens[(token.account.key, token.scopes)] = token
            self._save()

    def evict_token(self, token: Token) -> None:
        with self._lock:
            key = (token.account.key, token.scopes)
            current = self._tokens.get(key)
            if current is not None and current.access_token == token.access_token:
                del self._tokens[key]
                self._save()
                logger.info("Evicted rejected token for %s scope(s)", len(token.scopes))

    def find_cached_token(self, account: Account, scopes: Iterable[str]) -> Token | None:
        """Return an unexpired token for `account` whose scopes cover `scopes`."""
        wanted = frozenset(scopes)
        now = self._clock()
        with self._lock:
            expired = [k for k, t in self._tokens.items() if not t.is_valid(now)]
            for k in expired:
                del self._tokens[k]
            candidates = [
                t for (acct_key, _), t in self._tokens.items() if acct_key == account.key and t.covers(wanted)
            ]
            if expired:
                self._save()
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.expires_at)

    # Snapshot persistence

    def _load(self) -> None:
        if self._snapshot_path is None or not self._snapshot_path.exists():
            return
        try:
            data = json.loads(self._snapshot_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Session snapshot unreadable, starting empty: %s", type(exc).__name__)
            return
        if not isinstance(data, dict):
            return

        for raw in data.get("accounts", []):
            try:
                account = Account.from_dict(raw)
            except (KeyError, TypeError):
                continue
            self._accounts[account.key] = account

        now = self._clock()
        for raw in data.get("tokens", []):
            account = self._accounts.get(str(raw.get("account_key")))
            if account is None:
                continue
            try:
                token = Token(
                    access_token=str(raw["access_token"]),
                    scopes=frozenset(raw["scopes"]),
                    expires_at=datetime.fromisoformat(raw["expires_at"]),
                    account=account,
                )
            except (KeyError, TypeError, ValueError):
                continue
            if token.is_valid(now):
                self._tokens[(account.key, token.scopes)] = token
        logger.info("Session snapshot restored (accounts=%s)", len(self._accounts))

    def _snapshot(self) -> dict[str, Any]:
        return {
            "accounts": [a.to_dict() for a in self._accounts.values()],
            "tokens": [
                {
                    "account_key": t.account.key,
                    "access_token": t.access_token,
                    "scopes": sorted(t.scopes),
                    "expires_at": t.expires_at.isoformat(),
                }
                for t in self._tokens.values()
            ],
        }

    def _save(self) -> None:
        # Caller holds the lock.
        if self._snapshot_path is None:
            return
        path = self._snapshot_path
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(self._snapshot(), f)
        tmp.replace(path)
