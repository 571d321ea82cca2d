"""Refresh token ledger: capped FIFO list of active refresh token fingerprints."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from levelup.storage.memory import MemoryStore
from levelup.storage.models import MAX_ACTIVE_REFRESH_TOKENS, User


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(store):
    return store.create_user("ledger", "ledger@example.com", "hash", is_email_verified=True)


def test_ledger_evicts_oldest_past_cap():
    user = User(id="u1", username="u", email="u@example.com", password_hash="x")
    evicted = None
    for i in range(MAX_ACTIVE_REFRESH_TOKENS + 1):
        evicted = user.add_refresh_token(f"fp-{i}")
    assert evicted == "fp-0"
    assert user.active_refresh_tokens == [f"fp-{i}" for i in range(1, MAX_ACTIVE_REFRESH_TOKENS + 1)]


def test_ledger_respects_custom_limit():
    user = User(id="u1", username="u", email="u@example.com", password_hash="x")
    for i in range(4):
        user.add_refresh_token(f"fp-{i}", limit=2)
    assert user.active_refresh_tokens == ["fp-2", "fp-3"]


def test_remove_unknown_token_is_false():
    user = User(id="u1", username="u", email="u@example.com", password_hash="x")
    assert user.remove_refresh_token("missing") is False


def test_store_ledger_never_exceeds_cap(store, user):
    for i in range(8):
        assert store.add_refresh_token(user.id, f"fp-{i}")
    stored = store.get_user(user.id)
    assert len(stored.active_refresh_tokens) == MAX_ACTIVE_REFRESH_TOKENS
    assert stored.active_refresh_tokens[0] == "fp-3"


def test_reset_replaces_whole_ledger(store, user):
    store.add_refresh_token(user.id, "old-1")
    store.add_refresh_token(user.id, "old-2")
    store.reset_refresh_tokens(user.id, "fresh")
    assert store.get_user(user.id).active_refresh_tokens == ["fresh"]


def test_rotate_requires_old_token(store, user):
    store.add_refresh_token(user.id, "current")
    assert store.rotate_refresh_token(user.id, "current", "next")
    assert not store.rotate_refresh_token(user.id, "current", "other")
    assert store.get_user(user.id).active_refresh_tokens == ["next"]


def test_concurrent_rotation_has_single_winner(store, user):
    store.add_refresh_token(user.id, "shared")

    def _rotate(i):
        return store.rotate_refresh_token(user.id, "shared", f"new-{i}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_rotate, range(8)))

    assert results.count(True) == 1
    assert len(store.get_user(user.id).active_refresh_tokens) == 1


def test_ledger_operations_on_missing_user(store):
    assert store.add_refresh_token("ghost", "fp") is False
    assert store.reset_refresh_tokens("ghost", "fp") is False
    assert store.rotate_refresh_token("ghost", "a", "b") is False
    assert store.remove_refresh_token("ghost", "fp") is False
