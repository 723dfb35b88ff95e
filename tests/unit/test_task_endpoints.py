from datetime import datetime

from fastapi import FastAPI
from fastapi.testclient import TestClient

from task_api.app.infrastructure.messaging.inmemory.in_memory_publisher import InMemoryPublisher
from task_api.app.infrastructure.messaging.rabbitmq.constants import PublisherState
from task_api.app.routers.tasks import tasks_router
from tests.conftest import FakePublisher, rejecting_publisher


def test_post_task_202_and_enqueues_message(test_app):
    publisher = FakePublisher()
    test_app.state.publisher = publisher
    client = TestClient(test_app)

    r = client.post("/tasks", json={"taskId": "task-1", "payload": {"a": [1, 2]}})

    assert r.status_code == 202
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "Task submitted successfully to processing queue"
    assert body["taskId"] == "task-1"
    assert body["messageId"]
    datetime.fromisoformat(body["timestamp"])

    [published] = publisher.published
    assert published["message_id"] == body["messageId"]
    assert published["headers"] == {"taskId": "task-1"}
    message = published["message"]
    assert set(message) == {"taskId", "payload", "submittedAt"}
    assert message["payload"] == {"a": [1, 2]}
    assert message["submittedAt"].endswith("Z")


def test_null_and_scalar_payloads_are_accepted(test_app):
    client = TestClient(test_app)
    for payload in (None, 0, "", False, [1]):
        r = client.post("/tasks", json={"taskId": "t", "payload": payload})
        assert r.status_code == 202, payload
    assert [p["message"]["payload"] for p in test_app.state.publisher.published] == [None, 0, "", False, [1]]


def test_invalid_json_is_400(test_app):
    client = TestClient(test_app)
    r = client.post("/tasks", content=b"{taskId", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["reason"] == "invalid_json"
    assert r.json()["error"] == "Bad Request"


def test_non_object_body_is_400(test_app):
    r = TestClient(test_app).post("/tasks", json=[1, 2])
    assert r.status_code == 400
    assert r.json()["reason"] == "invalid_body"


def test_missing_task_id_is_400(test_app):
    client = TestClient(test_app)
    bodies = [{"payload": 1}] + [{"taskId": v, "payload": 1} for v in ("", "   ", None, 0, False)]
    for body in bodies:
        r = client.post("/tasks", json=body)
        assert r.status_code == 400
        assert r.json() == {"error": "Bad Request", "reason": "task_id_required", "message": "taskId is required"}
    assert test_app.state.publisher.published == []


def test_non_string_task_id_is_400(test_app):
    client = TestClient(test_app)
    for task_id in (42, True, [], {}):
        r = client.post("/tasks", json={"taskId": task_id, "payload": 1})
        assert r.status_code == 400
        assert r.json()["reason"] == "invalid_body"


def test_missing_payload_is_400(test_app):
    r = TestClient(test_app).post("/tasks", json={"taskId": "t"})
    assert r.status_code == 400
    assert r.json()["reason"] == "payload_required"


def test_empty_body_is_task_id_required(test_app):
    r = TestClient(test_app).post("/tasks", content=b"")
    assert r.status_code == 400
    assert r.json()["reason"] == "task_id_required"


def test_publisher_missing_is_503(test_app):
    test_app.state.publisher = None
    r = TestClient(test_app).post("/tasks", json={"taskId": "t", "payload": 1})
    assert r.status_code == 503
    assert r.json()["reason"] == "publisher_not_ready"


def test_publisher_not_ready_is_503(test_app):
    test_app.state.publisher = FakePublisher(state=PublisherState.RECONNECTING)
    r = TestClient(test_app).post("/tasks", json={"taskId": "t", "payload": 1})
    assert r.status_code == 503
    assert r.json()["reason"] == "publisher_not_ready"


def test_queue_rejected_is_503(test_app):
    test_app.state.publisher = rejecting_publisher()
    r = TestClient(test_app).post("/tasks", json={"taskId": "t", "payload": 1})
    assert r.status_code == 503
    assert r.json()["reason"] == "queue_rejected"


def test_unexpected_fault_is_generic_500(test_app):
    test_app.state.publisher = FakePublisher(raise_on_publish=KeyError("secret internal detail"))
    r = TestClient(test_app).post("/tasks", json={"taskId": "t", "payload": 1})
    assert r.status_code == 500
    assert r.json() == {"error": "Internal Server Error"}
    assert "secret" not in r.text


def test_inmemory_publisher_stores_message():
    app = FastAPI()
    publisher = InMemoryPublisher()
    app.state.publisher = publisher
    app.include_router(tasks_router)

    r = TestClient(app).post("/tasks", json={"taskId": "t-9", "payload": {"x": 1}})

    assert r.status_code == 202
    assert publisher.messages[0]["taskId"] == "t-9"
    assert publisher.message_ids == [r.json()["messageId"]]


def test_inmemory_publisher_full_queue_is_503():
    app = FastAPI()
    app.state.publisher = InMemoryPublisher(max_length=1)
    app.include_router(tasks_router)
    client = TestClient(app)

    assert client.post("/tasks", json={"taskId": "a", "payload": 1}).status_code == 202
    r = client.post("/tasks", json={"taskId": "b", "payload": 1})
    assert r.status_code == 503
    assert r.json()["reason"] == "queue_rejected"
