from __future__ import annotations

import pytest

import flowguard.recovery.cache as cache_mod
from flowguard.recovery import OfflineCache, cache_key


class _FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def monotonic(monkeypatch: pytest.MonkeyPatch) -> _FakeMonotonic:
    fake = _FakeMonotonic()
    monkeypatch.setattr(cache_mod, "_monotonic", fake)
    return fake


def test_cache_key_is_stable_for_equal_mappings() -> None:
    first = cache_key("getWorkflows", {"limit": 10, "active": True})
    second = cache_key("getWorkflows", {"active": True, "limit": 10})

    assert first == second
    assert first == 'getWorkflows:{"active":true,"limit":10}'


def test_cache_key_uses_strings_verbatim() -> None:
    assert cache_key("getWorkflow", "wf-1") == "getWorkflow:wf-1"
    assert cache_key("getWorkflows", None) == "getWorkflows:null"


def test_cache_key_falls_back_to_repr_for_mixed_key_mappings() -> None:
    args = {1: "a", "b": 2}

    assert cache_key("getWorkflows", args) == f"getWorkflows:{args!r}"


def test_entry_expires_after_ttl(monotonic: _FakeMonotonic) -> None:
    cache = OfflineCache()
    cache.set("k", {"v": 1}, ttl=0.1)

    monotonic.now += 0.05
    assert cache.get("k") == {"v": 1}
    assert cache.has("k") is True

    monotonic.now += 0.10
    assert cache.get("k") is None
    assert cache.stats().size == 0


def test_default_ttl_applies(monotonic: _FakeMonotonic) -> None:
    cache = OfflineCache(default_ttl=10.0)
    entry = cache.set("k", "v")

    assert entry.ttl == 10.0
    monotonic.now += 10.0
    assert cache.get("k") == "v"
    monotonic.now += 0.01
    assert cache.get("k") is None


def test_falsy_values_are_cached() -> None:
    cache = OfflineCache()
    cache.set("empty", [])

    assert cache.has("empty") is True
    assert cache.get("empty") == []


def test_stats_delete_and_clear() -> None:
    cache = OfflineCache()
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.stats().keys == ("a", "b")

    cache.delete("a")
    cache.delete("missing")
    assert cache.stats().size == 1

    cache.clear()
    assert cache.stats().size == 0


def test_negative_ttl_is_rejected() -> None:
    with pytest.raises(ValueError, match="default_ttl must be >= 0"):
        OfflineCache(default_ttl=-1.0)
    with pytest.raises(ValueError, match="ttl must be >= 0"):
        OfflineCache().set("k", 1, ttl=-1.0)
