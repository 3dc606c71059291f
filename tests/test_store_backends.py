"""
Tests for all storage backends.

Covers:
  - InMemoryRecordStore / InMemoryMessageLog
  - FileMessageLog (JSON-lines persistence)
  - SqlRecordStore / SqlMessageLog (via SQLite for test portability)
  - Store factory and URL mapping
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from models.schemas import (
    Agent, BatchCallRecord, BatchStatus, ConversationLifecycle,
    ConversationRecord, MessageDirection, MessageLogEntry, SideEffectRecord,
    SideEffectStatus,
)

CONTACT = "+573138539155"


def _entry(i: int, contact_id: str = CONTACT, base: datetime = None) -> MessageLogEntry:
    base = base or datetime(2026, 3, 1, tzinfo=timezone.utc)
    return MessageLogEntry(
        contact_id=contact_id,
        direction=MessageDirection.RECEIVED if i % 2 == 0 else MessageDirection.SENT,
        content=f"m{i}",
        timestamp=base + timedelta(seconds=i),
        metadata={"i": i},
    )


# ──────────────────────────────────────────────────────────────
#  Shared behaviour, run against each record store backend
# ──────────────────────────────────────────────────────────────

class _RecordStoreContract:

    @pytest.mark.asyncio
    async def test_agent_roundtrip(self, record_store):
        agent = Agent(name="Cobranza", system_instruction="Eres amable.", owner_id="org_1")
        await record_store.save_agent(agent)
        loaded = await record_store.get_agent(agent.id)
        assert loaded.name == "Cobranza"
        assert loaded.is_active is True
        assert [a.id for a in await record_store.list_agents("org_1")] == [agent.id]
        assert await record_store.get_agent("missing") is None

    @pytest.mark.asyncio
    async def test_conversation_upsert_and_filters(self, record_store):
        record = ConversationRecord(contact_id=CONTACT, bound_agent_id="agent_1",
                                    extra_state={"k": "v"})
        await record_store.save_conversation(record)
        record.last_outbound_text = "hola"
        record.lifecycle = ConversationLifecycle.ARCHIVED
        await record_store.save_conversation(record)
        await record_store.save_conversation(ConversationRecord(contact_id="+571"))

        loaded = await record_store.get_conversation(CONTACT)
        assert loaded.last_outbound_text == "hola"
        assert loaded.extra_state == {"k": "v"}
        assert [r.contact_id for r in await record_store.list_conversations(agent_id="agent_1")] == [CONTACT]
        archived = await record_store.list_conversations(lifecycle=ConversationLifecycle.ARCHIVED)
        assert [r.contact_id for r in archived] == [CONTACT]
        assert len(await record_store.list_conversations()) == 2

    @pytest.mark.asyncio
    async def test_batch_history_and_lookup(self, record_store):
        first = BatchCallRecord(group_id="55", batch_id="btcal_1", status=BatchStatus.COMPLETED,
                                total_recipients=3, completed_count=2, failed_count=1)
        await record_store.save_batch(first)
        await record_store.archive_batch(first)
        second = BatchCallRecord(group_id="55", batch_id="btcal_2", status=BatchStatus.IN_PROGRESS,
                                 total_recipients=5, metadata={"whatsapp_agent_id": "a"})
        await record_store.save_batch(second)

        current = await record_store.get_batch("55")
        assert current.batch_id == "btcal_2"
        assert current.metadata == {"whatsapp_agent_id": "a"}
        assert [r.batch_id for r in await record_store.batch_history("55")] == ["btcal_1"]
        assert (await record_store.find_batch("btcal_1")).status == BatchStatus.COMPLETED
        assert (await record_store.find_batch("btcal_2")).status == BatchStatus.IN_PROGRESS
        assert await record_store.find_batch("nope") is None
        in_progress = await record_store.list_batches(BatchStatus.IN_PROGRESS)
        assert [r.group_id for r in in_progress] == ["55"]

    @pytest.mark.asyncio
    async def test_side_effect_claim_is_atomic(self, record_store):
        claim = SideEffectRecord(batch_id="btcal_1", contact_id=CONTACT, group_id="55",
                                 recipient={"contact_id": CONTACT, "status": "completed"})
        assert await record_store.claim_side_effect(claim) is True
        assert await record_store.claim_side_effect(claim) is False

        claim.status = SideEffectStatus.SUCCEEDED
        claim.attempts = 1
        claim.result = {"external_message_id": "SM1"}
        await record_store.update_side_effect(claim)

        loaded = await record_store.get_side_effect("btcal_1", CONTACT)
        assert loaded.status == SideEffectStatus.SUCCEEDED
        assert loaded.result == {"external_message_id": "SM1"}
        assert loaded.recipient["status"] == "completed"
        assert len(await record_store.list_side_effects("btcal_1", SideEffectStatus.SUCCEEDED)) == 1
        assert await record_store.list_side_effects("btcal_1", SideEffectStatus.FAILED) == []

    @pytest.mark.asyncio
    async def test_update_replaces_recipient_snapshot(self, record_store):
        await record_store.claim_side_effect(SideEffectRecord(
            batch_id="btcal_1", contact_id=CONTACT, status=SideEffectStatus.SKIPPED,
            recipient={"contact_id": CONTACT, "status": "failed"}))
        claim = await record_store.get_side_effect("btcal_1", CONTACT)
        claim.status = SideEffectStatus.PENDING
        claim.recipient = {"contact_id": CONTACT, "status": "completed"}
        await record_store.update_side_effect(claim)

        loaded = await record_store.get_side_effect("btcal_1", CONTACT)
        assert loaded.status == SideEffectStatus.PENDING
        assert loaded.recipient["status"] == "completed"


class _MessageLogContract:

    @pytest.mark.asyncio
    async def test_recent_is_oldest_first(self, log):
        for i in range(5):
            await log.append(_entry(i))
        entries = await log.recent(CONTACT, 3)
        assert [e.content for e in entries] == ["m2", "m3", "m4"]
        assert await log.count(CONTACT) == 5
        assert entries[0].metadata == {"i": 2}

    @pytest.mark.asyncio
    async def test_recent_before_entry(self, log):
        entries = [_entry(i) for i in range(6)]
        for e in entries:
            await log.append(e)
        before = await log.recent(CONTACT, 10, before_id=entries[4].id)
        assert [e.content for e in before] == ["m0", "m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_logs_are_per_contact(self, log):
        await log.append(_entry(0))
        await log.append(_entry(1, contact_id="+571"))
        assert [e.content for e in await log.recent("+571", 10)] == ["m1"]
        assert await log.recent("+570", 10) == []

    @pytest.mark.asyncio
    async def test_zero_limit(self, log):
        await log.append(_entry(0))
        assert await log.recent(CONTACT, 0) == []


# ──────────────────────────────────────────────────────────────
#  In-memory
# ──────────────────────────────────────────────────────────────

class TestInMemoryRecordStore(_RecordStoreContract):
    @pytest.fixture
    def record_store(self):
        from database.store_memory import InMemoryRecordStore
        return InMemoryRecordStore()

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, record_store):
        await record_store.save_conversation(ConversationRecord(contact_id=CONTACT))
        loaded = await record_store.get_conversation(CONTACT)
        loaded.has_started = True
        assert (await record_store.get_conversation(CONTACT)).has_started is False


class TestInMemoryMessageLog(_MessageLogContract):
    @pytest.fixture
    def log(self):
        from database.store_memory import InMemoryMessageLog
        return InMemoryMessageLog()

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_append_order(self, log):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for i in range(3):
            await log.append(MessageLogEntry(contact_id=CONTACT, direction=MessageDirection.SENT,
                                             content=f"m{i}", timestamp=ts))
        assert [e.content for e in await log.recent(CONTACT, 3)] == ["m0", "m1", "m2"]


# ──────────────────────────────────────────────────────────────
#  File message log
# ──────────────────────────────────────────────────────────────

class TestFileMessageLog(_MessageLogContract):
    @pytest.fixture
    def log(self, tmp_path):
        from database.store_file import FileMessageLog
        return FileMessageLog(data_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        from database.store_file import FileMessageLog
        log = FileMessageLog(data_dir=str(tmp_path))
        for i in range(3):
            await log.append(_entry(i))

        reopened = FileMessageLog(data_dir=str(tmp_path))
        assert [e.content for e in await reopened.recent(CONTACT, 10)] == ["m0", "m1", "m2"]
        assert (tmp_path / "%2B573138539155.jsonl").exists()

    @pytest.mark.asyncio
    async def test_bad_lines_are_skipped(self, tmp_path):
        from database.store_file import FileMessageLog
        log = FileMessageLog(data_dir=str(tmp_path))
        await log.append(_entry(0))
        with open(tmp_path / "%2B573138539155.jsonl", "a", encoding="utf-8") as f:
            f.write("{not json\n")

        reopened = FileMessageLog(data_dir=str(tmp_path))
        assert await reopened.count(CONTACT) == 1


# ──────────────────────────────────────────────────────────────
#  SQL (SQLite)
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def sqlite_db(tmp_path):
    from database.session import close_db, init_db, init_engine
    init_engine(f"sqlite:///{tmp_path / 'relay.db'}")
    await init_db()
    yield
    await close_db()


class TestSqlRecordStore(_RecordStoreContract):
    @pytest.fixture
    def record_store(self, sqlite_db):
        from database.store import SqlRecordStore
        return SqlRecordStore()


class TestSqlMessageLog(_MessageLogContract):
    @pytest.fixture
    def log(self, sqlite_db):
        from database.store import SqlMessageLog
        return SqlMessageLog()

    @pytest.mark.asyncio
    async def test_equal_timestamps_use_insert_order(self, log):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        entries = [MessageLogEntry(contact_id=CONTACT, direction=MessageDirection.SENT,
                                   content=f"m{i}", timestamp=ts) for i in range(4)]
        for e in entries:
            await log.append(e)
        assert [e.content for e in await log.recent(CONTACT, 10, before_id=entries[2].id)] == ["m0", "m1"]
        latest = await log.recent(CONTACT, 1)
        assert latest[0].content == "m3"
        assert latest[0].timestamp.tzinfo is not None


class TestSqlSession:

    @pytest.mark.asyncio
    async def test_ping_and_sqlite_pragmas(self, sqlite_db):
        from sqlalchemy import text
        from database.session import get_engine, ping_db
        assert await ping_db() is True
        async with get_engine().connect() as conn:
            mode = (await conn.execute(text("PRAGMA journal_mode"))).scalar()
            timeout = (await conn.execute(text("PRAGMA busy_timeout"))).scalar()
        assert mode.lower() == "wal"
        assert timeout == 5000

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, sqlite_db):
        from database.models import AgentRow
        from database.session import get_session
        from database.store import SqlRecordStore
        with pytest.raises(RuntimeError):
            async with get_session() as db:
                db.add(AgentRow(id="a1", name="Cobranza"))
                await db.flush()
                raise RuntimeError("boom")
        assert await SqlRecordStore().get_agent("a1") is None


# ──────────────────────────────────────────────────────────────
#  Factory & URL mapping
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryRecordStore
        assert isinstance(create_store({}), InMemoryRecordStore)

    def test_sql_backend(self):
        from database.store import SqlRecordStore
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "sql"}), SqlRecordStore)

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryRecordStore
        assert isinstance(create_store({"store_backend": "mongo"}), InMemoryRecordStore)

    def test_singleton_until_reset(self):
        from database.store_factory import create_store, get_store, reset_store
        store = create_store({})
        assert get_store() is store
        reset_store()
        assert get_store() is not store

    def test_file_message_log(self, tmp_path):
        from database.store_factory import create_message_log
        from database.store_file import FileMessageLog
        log = create_message_log({"message_log_backend": "file", "message_log_dir": str(tmp_path)})
        assert isinstance(log, FileMessageLog)

    def test_sql_message_log(self):
        from database.store import SqlMessageLog
        from database.store_factory import create_message_log
        assert isinstance(create_message_log({"message_log_backend": "sql"}), SqlMessageLog)


class TestSessionURLMapping:

    def test_postgresql_url_mapping(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql://u:p@h/d") == "postgresql+asyncpg://u:p@h/d"

    def test_mysql_url_mapping(self):
        from database.session import _to_async_url
        assert _to_async_url("mysql://u:p@h/d") == "mysql+aiomysql://u:p@h/d"

    def test_sqlite_url_mapping(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_already_async_url_passthrough(self):
        from database.session import _to_async_url
        url = "postgresql+asyncpg://u:p@h/d"
        assert _to_async_url(url) == url

    def test_engine_kwargs(self):
        from config.settings import DatabaseConfig
        from database.session import _engine_kwargs
        config = DatabaseConfig(pool_size=4)
        assert "pool_size" not in _engine_kwargs("sqlite+aiosqlite:///./test.db", config)
        pooled = _engine_kwargs("postgresql+asyncpg://u:p@h/d", config)
        assert pooled["pool_size"] == 4
        assert pooled["max_overflow"] == 8

    def test_redact_hides_credentials(self):
        from database.session import _redact
        assert _redact("postgresql://user:secret@db:5432/relay") == "db:5432/relay"
