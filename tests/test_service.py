import asyncio

import pytest

from weekboard.adapters.store_memory import MemoryStore
from weekboard.application.persistence import StateRepository
from weekboard.application.service import ERROR_HINT, LeaderboardService
from weekboard.domain.errors import PersistenceError, ProviderError

from conftest import ALICE, BOB, PREV_W, W, FakeChain, ScriptedSource, make_engine, make_log

NOW = W + 1_000_000
LATEST = 1_000_500


class RecordingLock:
    def __init__(self, grant: bool = True) -> None:
        self.grant = grant
        self.acquired = 0
        self.released = 0

    async def acquire(self, key, ttl_seconds):
        self.acquired += 1
        return self.grant

    async def release(self, key):
        self.released += 1


class FailingSaveStore(MemoryStore):
    async def set(self, key, value, ttl_seconds=None):
        if key.endswith(":state"):
            raise PersistenceError("upstash SET HTTP 500: boom")
        await super().set(key, value, ttl_seconds)


class StaticNames:
    def __init__(self, mapping=None, error=None):
        self.mapping = mapping or {}
        self.error = error
        self.asked = []

    async def resolve(self, addresses):
        self.asked.append(list(addresses))
        if self.error:
            raise self.error
        return self.mapping


def _service(source=None, *, lock=None, store=None, names=None, chain=None, **kw):
    source = source or ScriptedSource([make_log(ALICE, 10, W, 1_000_100), make_log(BOB, 4, PREV_W, 800_000)])
    lock = lock or RecordingLock()
    repo = StateRepository(store or MemoryStore(), lock, prefix="t")
    svc = LeaderboardService(engine=make_engine(chain or FakeChain(LATEST), source), repo=repo,
                             names=names, clock_ms=lambda: NOW, **kw)
    return svc, source, lock, repo


def test_first_read_updates_and_persists():
    svc, source, lock, repo = _service()
    p = asyncio.run(svc.read())
    assert p["ok"] is True
    assert p["weekly"] == [{"rank": 1, "address": ALICE, "points": "10"}]
    assert p["lastWeek"] == [{"rank": 1, "address": BOB, "points": "4"}]
    assert p["meta"]["complete"] is True
    assert asyncio.run(repo.load_state()).current.totals == {ALICE: 10}
    assert asyncio.run(repo.load_response()) == p
    assert (lock.acquired, lock.released) == (1, 1)


def test_cached_response_is_served_without_scanning():
    svc, source, lock, repo = _service()
    asyncio.run(repo.save_response({"ok": True, "weekly": [], "lastWeek": [], "meta": {}}))
    p = asyncio.run(svc.read())
    assert p == {"ok": True, "weekly": [], "lastWeek": [], "meta": {}}
    assert source.calls == [] and lock.acquired == 0


def test_refresh_bypasses_cache():
    svc, source, lock, repo = _service()
    asyncio.run(repo.save_response({"ok": True, "weekly": [], "lastWeek": [], "meta": {}}))
    p = asyncio.run(svc.read(refresh=True))
    assert p["weekly"][0]["address"] == ALICE
    assert source.calls
    assert lock.released == 1


def test_busy_lock_serves_cache_with_flag():
    svc, source, lock, repo = _service(lock=RecordingLock(grant=False))
    asyncio.run(repo.save_response({"ok": True, "weekly": [], "lastWeek": [], "meta": {"store": "memory"}}))
    p = asyncio.run(svc.read(refresh=True))
    assert p["meta"] == {"store": "memory", "busy": True}
    assert source.calls == []
    assert lock.released == 0


def test_busy_lock_without_cache_still_updates():
    svc, source, lock, repo = _service(lock=RecordingLock(grant=False))
    p = asyncio.run(svc.read())
    assert p["ok"] is True and source.calls
    assert lock.released == 0


def test_failures_become_error_envelope_and_release_lock():
    svc, source, lock, repo = _service(ScriptedSource(error=ProviderError("rpc exploded", kind="unknown")))
    p = asyncio.run(svc.read())
    assert p["ok"] is False
    assert "rpc exploded" in p["error"]
    assert p["hint"] == ERROR_HINT
    assert lock.released == 1
    assert asyncio.run(repo.load_state()) is None


def test_persistence_failure_is_reported():
    svc, source, lock, repo = _service(store=FailingSaveStore())
    p = asyncio.run(svc.read())
    assert p["ok"] is False and "HTTP 500" in p["error"]
    assert lock.released == 1


@pytest.mark.parametrize("persist_partial, saved", [(True, True), (False, False)])
def test_partial_progress_persistence_is_optional(persist_partial, saved):
    source = ScriptedSource([make_log(ALICE, 10, W, 1_000_100)],
                            error=ProviderError("explorer down", kind="unknown"), fail_on_call=2)
    svc, _, _, repo = _service(source, persist_partial=persist_partial)
    p = asyncio.run(svc.read())
    assert p["ok"] is False
    state = asyncio.run(repo.load_state())
    if saved:
        assert state.current.totals == {ALICE: 10}
        assert state.current_cursor.complete and not state.previous_cursor.complete
    else:
        assert state is None


def test_names_are_attached_when_requested():
    names = StaticNames({ALICE: "alice.farcaster.eth"})
    svc, *_ = _service(names=names)
    p = asyncio.run(svc.read(include_names=True))
    assert p["weekly"][0]["name"] == "alice.farcaster.eth"
    assert "name" not in p["lastWeek"][0]
    assert names.asked == [sorted([ALICE, BOB])]


def test_names_are_skipped_unless_requested():
    names = StaticNames({ALICE: "alice.farcaster.eth"})
    svc, *_ = _service(names=names)
    p = asyncio.run(svc.read())
    assert "name" not in p["weekly"][0]
    assert names.asked == []


def test_name_failure_is_not_fatal():
    svc, *_ = _service(names=StaticNames(error=RuntimeError("neynar 502")))
    p = asyncio.run(svc.read(include_names=True))
    assert p["ok"] is True
    assert "name" not in p["weekly"][0]
