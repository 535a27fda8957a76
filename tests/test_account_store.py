"""AccountStore tests: ordering, scope coverage, expiry, last-write-wins, snapshot."""

from __future__ import annotations

import json
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

from entra_client_mcp.account_store import AccountStore
from fakes import API_SCOPE, NOW, make_account, make_token


def _store(**kwargs) -> AccountStore:  # noqa: ANN003
    return AccountStore(clock=lambda: NOW, **kwargs)


def test_accounts_keep_insertion_order_and_replace_in_place() -> None:
    store = _store()
    assert store.list_accounts() == []

    a = make_account("a")
    b = make_account("b")
    store.add_or_replace(a)
    store.add_or_replace(b)
    store.add_or_replace(a.with_claims({"name": "Renamed"}, name="Renamed"))

    accounts = store.list_accounts()
    assert [x.home_account_id for x in accounts] == [a.home_account_id, b.home_account_id]
    assert accounts[0].name == "Renamed"


def test_cached_token_matches_exact_or_superset_scopes() -> None:
    store = _store()
    account = make_account()
    store.add_or_replace(account)
    store.put_token(make_token(account, (API_SCOPE, "api://x/extra")))

    assert store.find_cached_token(account, [API_SCOPE]) is not None
    assert store.find_cached_token(account, [API_SCOPE, "api://x/extra"]) is not None
    assert store.find_cached_token(account, [API_SCOPE, "api://x/other"]) is None


def test_cached_token_is_per_account() -> None:
    store = _store()
    a = make_account("a")
    b = make_account("b")
    store.put_token(make_token(a))

    assert store.find_cached_token(b, [API_SCOPE]) is None


def test_expired_token_is_not_returned_and_is_pruned() -> None:
    store = _store()
    account = make_account()
    store.put_token(make_token(account, expires_in=timedelta(seconds=0)))

    assert store.find_cached_token(account, [API_SCOPE]) is None
    assert store.find_cached_token(account, [API_SCOPE]) is None


def test_last_write_wins_for_same_key() -> None:
    store = _store()
    account = make_account()
    store.put_token(make_token(account, value="first"))
    store.put_token(make_token(account, value="second", expires_in=timedelta(minutes=5)))

    token = store.find_cached_token(account, [API_SCOPE])
    assert token is not None
    assert token.access_token == "second"


def test_put_token_registers_unknown_account() -> None:
    store = _store()
    account = make_account()
    store.put_token(make_token(account))

    assert store.get_account(account.key) == account


def test_remove_drops_account_and_its_tokens() -> None:
    store = _store()
    a = make_account("a")
    b = make_account("b")
    store.put_token(make_token(a))
    store.put_token(make_token(b))

    store.remove(a.key)

    assert [x.key for x in store.list_accounts()] == [b.key]
    assert store.find_cached_token(a, [API_SCOPE]) is None
    assert store.find_cached_token(b, [API_SCOPE]) is not None


def test_clear_empties_everything() -> None:
    store = _store()
    account = make_account()
    store.put_token(make_token(account))

    store.clear()

    assert store.list_accounts() == []
    assert store.find_cached_token(account, [API_SCOPE]) is None


def test_evict_only_removes_the_rejected_token() -> None:
    store = _store()
    account = make_account()
    stale = make_token(account, value="stale")
    store.put_token(stale)
    store.put_token(make_token(account, value="fresh"))

    store.evict_token(stale)
    assert store.find_cached_token(account, [API_SCOPE]) is not None

    fresh = store.find_cached_token(account, [API_SCOPE])
    assert fresh is not None
    store.evict_token(fresh)
    assert store.find_cached_token(account, [API_SCOPE]) is None


def test_concurrent_writers_do_not_lose_updates() -> None:
    store = _store()
    account = make_account()

    def write(i: int) -> None:
        store.put_token(make_token(account, (f"api://x/scope{i}",), value=f"t{i}"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(write, range(50)))

    for i in range(50):
        token = store.find_cached_token(account, [f"api://x/scope{i}"])
        assert token is not None
        assert token.access_token == f"t{i}"


def test_snapshot_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "state" / "session.json"
    store = _store(snapshot_path=path)
    account = make_account()
    store.add_or_replace(account)
    store.put_token(make_token(account))
    store.put_token(make_token(account, ("User.Read",), value="old", expires_in=timedelta(seconds=-1)))

    restored = _store(snapshot_path=path)

    assert [a.key for a in restored.list_accounts()] == [account.key]
    assert restored.list_accounts()[0].id_token_claims["name"] == "Test User"
    token = restored.find_cached_token(account, [API_SCOPE])
    assert token is not None
    assert token.access_token == "at-1"
    assert restored.find_cached_token(account, ["User.Read"]) is None


def test_snapshot_file_is_private(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    store = _store(snapshot_path=path)
    store.add_or_replace(make_account())

    mode = stat.S_IMODE(os.stat(path).st_mode)
    assert mode == 0o600


def test_corrupt_snapshot_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")

    store = _store(snapshot_path=path)
    assert store.list_accounts() == []


def test_clear_persists_empty_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    store = _store(snapshot_path=path)
    store.put_token(make_token(make_account()))

    store.clear()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"accounts": [], "tokens": []}
