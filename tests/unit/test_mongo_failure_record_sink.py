from datetime import datetime, timezone

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from task_worker.app.domain.terminal_record import RecordingContext, TerminalFailureRecord
from task_worker.app.infrastructure.persistence.mongo.connection import mongo_uri, open_failure_record_sink
from task_worker.app.ports.failure_record_sink import FailureRecordError
from tests.conftest import make_worker_settings

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _FakeCollection:
    def __init__(self):
        self.indexes = []
        self.docs = []
        self.insert_raises = None

    async def create_index(self, key, **kwargs):
        self.indexes.append((key, kwargs))

    async def insert_one(self, doc):
        if self.insert_raises:
            raise self.insert_raises
        self.docs.append(doc)


class _FakeAdmin:
    def __init__(self, client):
        self._client = client

    async def command(self, name):
        if self._client.ping_error is not None:
            raise self._client.ping_error
        return {"ok": 1}


class _FakeClient:
    def __init__(self, collection, ping_error=None):
        self.collection = collection
        self.ping_error = ping_error
        self.admin = _FakeAdmin(self)
        self.closed = False
        self.path = None

    def __getitem__(self, db_name):
        client = self

        class _Db:
            def __getitem__(self, coll_name):
                client.path = (db_name, coll_name)
                return client.collection

        return _Db()

    def close(self):
        self.closed = True


class _ClientFactory:
    """Hands out one client per connect attempt; the first `failures` fail their ping."""

    def __init__(self, failures=0):
        self.failures = failures
        self.collection = _FakeCollection()
        self.clients = []
        self.kwargs = []

    def __call__(self, uri, **kwargs):
        self.kwargs.append((uri, kwargs))
        error = ServerSelectionTimeoutError("no servers") if len(self.clients) < self.failures else None
        client = _FakeClient(self.collection, ping_error=error)
        self.clients.append(client)
        return client


def _record(record_id="0001714564800000-abc"):
    return TerminalFailureRecord(
        record_id=record_id,
        task_id="t-1",
        payload={"x": 1},
        submitted_at=NOW,
        time_in_system_seconds=120,
        attempt_count=4,
        delivery_id="1",
        message_id="m-1",
        first_received_at=NOW,
        last_sent_at=NOW,
        recorded_at=NOW,
        stream_name="dead-letter-monitor/2024/05/01",
    )


def test_mongo_uri_includes_credentials_only_when_both_set():
    assert mongo_uri(make_worker_settings()) == "mongodb://localhost:27017"
    settings = make_worker_settings(DATABASE_USER="u", DATABASE_PASSWORD="p", DATABASE_HOST="db")
    assert mongo_uri(settings) == "mongodb://u:p@db:27017"


@pytest.mark.asyncio
async def test_open_retries_ping_then_creates_indexes():
    factory = _ClientFactory(failures=1)
    settings = make_worker_settings(MAX_CONNECTION_ATTEMPTS=3, DATABASE_COLLECTION="dead")

    sink = await open_failure_record_sink(settings, client_factory=factory)

    assert len(factory.clients) == 2
    assert factory.clients[0].closed is True
    assert factory.clients[1].closed is False
    assert factory.clients[1].path == ("task_pipeline", "dead")
    assert factory.kwargs[1][1]["tz_aware"] is True
    assert [key for key, _ in factory.collection.indexes] == ["record_id", "task_id", "recorded_at"]
    assert factory.collection.indexes[0][1]["unique"] is True

    await sink.close()
    assert factory.clients[1].closed is True


@pytest.mark.asyncio
async def test_open_gives_up_after_configured_attempts():
    factory = _ClientFactory(failures=5)
    with pytest.raises(ServerSelectionTimeoutError):
        await open_failure_record_sink(make_worker_settings(MAX_CONNECTION_ATTEMPTS=2), client_factory=factory)
    assert len(factory.clients) == 2
    assert all(c.closed for c in factory.clients)


@pytest.mark.asyncio
async def test_append_inserts_record_with_invocation_id():
    factory = _ClientFactory()
    sink = await open_failure_record_sink(make_worker_settings(), client_factory=factory)
    context = RecordingContext.new("dead-letter-monitor", now=NOW)

    await sink.append(_record(), context)

    [doc] = factory.collection.docs
    assert doc["record_id"] == "0001714564800000-abc"
    assert doc["invocation_id"] == context.invocation_id


@pytest.mark.asyncio
async def test_insert_error_becomes_failure_record_error():
    factory = _ClientFactory()
    sink = await open_failure_record_sink(make_worker_settings(), client_factory=factory)
    factory.collection.insert_raises = DuplicateKeyError("dup")

    with pytest.raises(FailureRecordError):
        await sink.append(_record(), RecordingContext.new("dead-letter-monitor", now=NOW))
