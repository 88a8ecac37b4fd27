from __future__ import annotations

import threading
from pathlib import Path

import pytest

from support_relay.store import (
    DuplicateKeyError,
    InMemoryMappingStore,
    MappingNotFoundError,
    MappingStore,
    SqlAlchemyMappingStore,
    create_mapping_store,
)


def _sqlite_url(path: Path) -> str:
    return f"sqlite:///{path / 'relay.db'}"


@pytest.fixture(params=["inmemory", "sqlalchemy"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> MappingStore:
    if request.param == "inmemory":
        return InMemoryMappingStore()
    return SqlAlchemyMappingStore(_sqlite_url(tmp_path))


def test_create_mapping_and_find_by_remote_conversation_id(store: MappingStore) -> None:
    created = store.create_mapping(
        thread_id="1718000000.000100",
        channel_id="C-SUPPORT",
        remote_conversation_id="conv-001",
    )
    assert created.thread_id == "1718000000.000100"
    assert created.created_at is not None

    found = store.find_by_remote_conversation_id("conv-001")
    assert found.thread_id == "1718000000.000100"
    assert found.channel_id == "C-SUPPORT"
    assert found.remote_conversation_id == "conv-001"

    by_thread = store.find_by_thread_id("1718000000.000100")
    assert by_thread is not None
    assert by_thread.remote_conversation_id == "conv-001"


def test_second_mapping_for_same_thread_is_rejected(store: MappingStore) -> None:
    store.create_mapping(thread_id="1718000000.000100", channel_id="C-SUPPORT", remote_conversation_id="conv-001")

    with pytest.raises(DuplicateKeyError):
        store.create_mapping(thread_id="1718000000.000100", channel_id="C-SUPPORT", remote_conversation_id="conv-002")

    # The original mapping is untouched and the rejected conversation is not routable.
    assert store.find_by_remote_conversation_id("conv-001").thread_id == "1718000000.000100"
    with pytest.raises(MappingNotFoundError):
        store.find_by_remote_conversation_id("conv-002")


def test_second_mapping_for_same_conversation_is_rejected(store: MappingStore) -> None:
    store.create_mapping(thread_id="1718000000.000100", channel_id="C-SUPPORT", remote_conversation_id="conv-001")

    with pytest.raises(DuplicateKeyError):
        store.create_mapping(thread_id="1718000000.000200", channel_id="C-SUPPORT", remote_conversation_id="conv-001")

    assert store.find_by_thread_id("1718000000.000200") is None


def test_lookups_for_unknown_keys(store: MappingStore) -> None:
    assert store.find_by_thread_id("missing") is None
    with pytest.raises(MappingNotFoundError):
        store.find_by_remote_conversation_id("missing")


def test_mark_webhook_processed_is_visible_and_single_use(store: MappingStore) -> None:
    assert store.has_processed_webhook("notif_001") is False

    record = store.mark_webhook_processed("notif_001")

    assert record.webhook_id == "notif_001"
    assert store.has_processed_webhook("notif_001") is True
    assert store.has_processed_webhook("notif_002") is False
    with pytest.raises(DuplicateKeyError):
        store.mark_webhook_processed("notif_001")


def test_reset_clears_both_tables(store: MappingStore) -> None:
    store.create_mapping(thread_id="1718000000.000100", channel_id="C-SUPPORT", remote_conversation_id="conv-001")
    store.mark_webhook_processed("notif_001")

    store.reset()

    assert store.find_by_thread_id("1718000000.000100") is None
    assert store.has_processed_webhook("notif_001") is False


def test_sqlalchemy_store_survives_reopen(tmp_path: Path) -> None:
    url = _sqlite_url(tmp_path)
    first = SqlAlchemyMappingStore(url)
    first.create_mapping(thread_id="1718000000.000100", channel_id="C-SUPPORT", remote_conversation_id="conv-001")
    first.mark_webhook_processed("notif_001")

    reopened = SqlAlchemyMappingStore(url)

    assert reopened.find_by_remote_conversation_id("conv-001").thread_id == "1718000000.000100"
    assert reopened.has_processed_webhook("notif_001") is True
    with pytest.raises(DuplicateKeyError):
        reopened.create_mapping(thread_id="1718000000.000100", channel_id="C-SUPPORT", remote_conversation_id="conv-009")


def test_concurrent_claims_for_one_webhook_have_a_single_winner(store: MappingStore) -> None:
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def _claim() -> None:
        barrier.wait()
        try:
            store.mark_webhook_processed("notif_race")
            result = "won"
        except DuplicateKeyError:
            result = "lost"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_claim) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("won") == 1
    assert outcomes.count("lost") == workers - 1


def test_create_mapping_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_mapping_store(backend="inmemory", database_url=""), InMemoryMappingStore)
    assert isinstance(
        create_mapping_store(backend=" SQLAlchemy ", database_url=_sqlite_url(tmp_path)),
        SqlAlchemyMappingStore,
    )
    with pytest.raises(RuntimeError, match="unsupported RELAY_STORE_BACKEND"):
        create_mapping_store(backend="redis", database_url="")


def test_sqlalchemy_store_requires_database_url() -> None:
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        SqlAlchemyMappingStore("")
