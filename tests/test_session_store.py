import pytest

from kbchat.errors import SessionBusy, SessionExpired
from kbchat.memory.session_store import InMemorySessionBackend, JsonFileSessionBackend, SessionStore, build_backend


def test_open_creates_session_for_unknown_id(session_store):
    session = session_store.open(None)
    assert session.history == []
    assert session.summary == ""
    assert session_store.open(session.id).id == session.id


def test_invalid_id_gets_fresh_session(session_store):
    session = session_store.open("../../etc/passwd")
    assert session.id != "../../etc/passwd"
    assert session_store.is_valid_id(session.id)


def test_expired_session_then_fresh(session_store, clock):
    session = session_store.open(None)
    session.history.append({"role": "user", "content": "hello"})
    session_store.save(session)

    clock.advance(31 * 60)
    with pytest.raises(SessionExpired):
        session_store.open(session.id)

    fresh = session_store.open(session.id)
    assert fresh.history == []
    assert fresh.summary == ""


def test_activity_refreshes_timeout(session_store, clock):
    session = session_store.open(None)
    for _ in range(3):
        clock.advance(20 * 60)
        session_store.open(session.id)


def test_reset_clears_memory(session_store):
    session = session_store.open(None)
    session.history.append({"role": "user", "content": "hi"})
    session.summary = "facts"
    session_store.save(session)

    session_store.reset(session.id)
    reopened = session_store.open(session.id)
    assert reopened.history == []
    assert reopened.summary == ""


def test_sessions_are_isolated(session_store):
    a = session_store.open(None)
    b = session_store.open(None)
    a.history.append({"role": "user", "content": "only in a"})
    session_store.save(a)

    assert session_store.open(b.id).history == []


async def test_acquire_rejects_concurrent_request(session_store):
    session = session_store.open(None)

    async with session_store.acquire(session.id):
        assert session_store.is_busy(session.id)
        with pytest.raises(SessionBusy):
            async with session_store.acquire(session.id):
                pass

    assert not session_store.is_busy(session.id)


def test_file_backend_persists(tmp_path, clock):
    directory = str(tmp_path / "sessions")
    store = SessionStore(JsonFileSessionBackend(directory), clock=clock)
    session = store.open(None)
    session.summary = "remember this"
    store.save(session)

    reopened = SessionStore(JsonFileSessionBackend(directory), clock=clock).open(session.id)
    assert reopened.summary == "remember this"


def test_build_backend_rejects_unknown_kind(tmp_path):
    with pytest.raises(ValueError):
        build_backend("redis", str(tmp_path))


def test_reset_of_idle_session_expires_it(session_store, clock):
    session = session_store.open(None)
    session.history.append({"role": "user", "content": "old"})
    session_store.save(session)

    clock.advance(31 * 60)
    with pytest.raises(SessionExpired):
        session_store.reset(session.id)

    assert session_store.backend.get(session.id) is None


def test_open_sweeps_abandoned_sessions(session_store, clock):
    for _ in range(50):
        session_store.open(None)

    clock.advance(10 * 60 * 60)
    survivor = session_store.open(None)

    assert session_store.backend.ids() == [survivor.id]


async def test_sweep_respects_retention_and_in_flight_sessions(clock):
    store = SessionStore(InMemorySessionBackend(), timeout_seconds=30 * 60, clock=clock, retention_seconds=2 * 60 * 60)
    stale = store.open(None)
    busy = store.open(None)
    clock.advance(60 * 60)
    recent = store.open(None)

    # past the timeout but inside retention: still reported as expired
    assert store.sweep() == 0
    with pytest.raises(SessionExpired):
        store.open(stale.id)

    clock.advance(2 * 60 * 60 + 60)
    async with store.acquire(busy.id):
        assert store.sweep() == 1

    assert store.backend.ids() == [busy.id]
    assert recent.id not in store.backend.ids()


def test_file_backend_sweep_removes_files(tmp_path, clock):
    directory = tmp_path / "sessions"
    store = SessionStore(JsonFileSessionBackend(str(directory)), clock=clock)
    old = store.open(None)

    clock.advance(3 * 60 * 60)
    assert store.sweep() == 1
    assert not (directory / f"{old.id}.json").exists()
