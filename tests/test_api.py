from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from bookgen.api.deps import get_service
from bookgen.api.main import app
from bookgen.models import ProjectStatus
import bookgen.services.task_service as task_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_create_and_get_book(client):
    resp = client.post("/api/books", json={"title": "The Keeper", "type": "fiction"})
    assert resp.status_code == 201
    body = resp.json()
    assert body["summary"]["phase"] == "foundation"
    assert body["summary"]["status"] == "idle"
    book_id = body["project"]["id"]

    resp = client.get(f"/api/books/{book_id}")
    assert resp.status_code == 200
    assert resp.json()["summary"]["title"] == "The Keeper"
    assert resp.json()["pending_approval"] is None

    resp = client.get("/api/books")
    assert [b["id"] for b in resp.json()] == [book_id]


def test_missing_book_is_404(client):
    resp = client.get("/api/books/book_missing")
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "NOT_FOUND"


def test_turn_then_approve(client, runtime, project_at, fx):
    book_id = project_at(start_confirmed=False)
    runtime.add_turn([fx.structure_call(3)])

    resp = client.post(f"/api/books/{book_id}/turns", json={"user_input": "design it"})
    assert resp.status_code == 200
    pending = resp.json()["pending_approval"]
    assert pending["tool_name"] == "save_structure"

    # 存在待审批时新回合返回错误而不是抛出
    resp = client.post(f"/api/books/{book_id}/turns", json={"user_input": "continue"})
    assert resp.status_code == 200
    assert resp.json()["error"]["kind"] == "approval_pending"

    resp = client.post(f"/api/approvals/{pending['id']}/approve")
    assert resp.status_code == 200
    assert resp.json()["committed"] is True
    assert resp.json()["phase"] == "approval_to_start_manual"

    resp = client.get(f"/api/books/{book_id}/phase")
    assert resp.json() == {"phase": "approval_to_start_manual"}


def test_reject(client, runtime, project_at, fx):
    book_id = project_at()
    runtime.add_turn([fx.structure_call(3)])
    pending = client.post(f"/api/books/{book_id}/turns", json={}).json()["pending_approval"]

    resp = client.post(f"/api/approvals/{pending['id']}/reject", json={"reason": "too short"})
    assert resp.status_code == 200
    assert resp.json()["approved"] is False

    resp = client.post(f"/api/approvals/{pending['id']}/approve")
    assert resp.status_code == 404


def test_malformed_phase_is_422(client, project_at):
    from bookgen.models import Structure

    book_id = project_at(structure=Structure(chapter_count=0))
    resp = client.get(f"/api/books/{book_id}/phase")
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "MALFORMED_PROJECT"

    # 详情仍可读取，阶段为空
    resp = client.get(f"/api/books/{book_id}")
    assert resp.status_code == 200
    assert resp.json()["summary"]["phase"] is None


def test_chapters_versions_and_revert(client, project_at, fx, service):
    book_id = project_at(structure=fx.structure(3), written=[1])
    service.store.save_chapter_version(book_id, 1, "Title 1", "second draft " * 20, 40)

    resp = client.get(f"/api/books/{book_id}/chapters")
    assert resp.json()["total"] == 1

    resp = client.get(f"/api/books/{book_id}/chapters/1/versions")
    assert [v["version_number"] for v in resp.json()] == [1, 2]

    resp = client.post(f"/api/books/{book_id}/chapters/1/revert", json={"version_number": 1})
    assert resp.status_code == 200
    assert resp.json()["version"] == 3
    assert resp.json()["content"] == fx.chapter_text(1)

    resp = client.post(f"/api/books/{book_id}/chapters/1/revert", json={"version_number": 9})
    assert resp.status_code == 400


def test_revert_takes_the_lease(client, project_at, fx, service, store):
    book_id = project_at(structure=fx.structure(3), written=[1])
    service.store.save_chapter_version(book_id, 1, "Title 1", "second draft " * 20, 40)

    store.set_status(book_id, ProjectStatus.GENERATING)
    resp = client.post(f"/api/books/{book_id}/chapters/1/revert", json={"version_number": 1})
    assert resp.status_code == 409
    assert len(store.list_chapter_versions(book_id, 1)) == 2

    store.set_status(book_id, ProjectStatus.IDLE)
    resp = client.post(f"/api/books/{book_id}/chapters/1/revert", json={"version_number": 1})
    assert resp.status_code == 200
    assert resp.json()["word_count"] == len(fx.chapter_text(1).split())
    assert store.get_project(book_id).status == ProjectStatus.IDLE
    last = service.list_checkpoints(book_id)[-1]
    assert last.step == "chapter_1"
    assert last.data["reverted_to"] == 1


def test_failed_turn_retry_and_pause(client, runtime, project_at, fx):
    book_id = project_at(structure=fx.structure(3))
    runtime.add_turn([RuntimeError("model crashed")])

    resp = client.post(f"/api/books/{book_id}/turns", json={})
    assert resp.json()["error"]["kind"] == "runtime"

    resume = client.get(f"/api/books/{book_id}/resume").json()
    assert resume["can_resume"] is True
    assert resume["status"] == "failed"

    runtime.add_turn([fx.save_chapter_call(1)])
    resp = client.post(f"/api/books/{book_id}/retry")
    assert resp.status_code == 200
    assert resp.json()["turn"]["committed_effects"][0]["tool_name"] == "save_chapter"
    assert resp.json()["resume"]["retry_count"] == 1

    resp = client.post(f"/api/books/{book_id}/pause")
    assert resp.json() == {"paused": True}

    resp = client.get(f"/api/books/{book_id}/checkpoints")
    steps = [cp["step"] for cp in resp.json()]
    assert steps[0] == "initialization"
    assert "chapter_1" in steps


def test_retry_on_idle_project_is_409(client, project_at):
    book_id = project_at()
    resp = client.post(f"/api/books/{book_id}/retry")
    assert resp.status_code == 409
    assert resp.json()["error_code"] == "BUSY"


def test_background_turn(client, project_at, monkeypatch):
    book_id = project_at()
    submitted = []

    def fake_submit(project_id, user_input=""):
        submitted.append((project_id, user_input))
        return "task-123"

    monkeypatch.setattr(task_service, "submit_turn", fake_submit)

    resp = client.post(f"/api/books/{book_id}/turns", json={"user_input": "go", "background": True})
    assert resp.status_code == 202
    assert resp.json()["task_id"] == "task-123"
    assert submitted == [(book_id, "go")]


def test_background_turn_conflict(client, project_at, monkeypatch):
    book_id = project_at()

    def busy_submit(project_id, user_input=""):
        raise ValueError("当前已有回合任务在运行")

    monkeypatch.setattr(task_service, "submit_turn", busy_submit)

    resp = client.post(f"/api/books/{book_id}/turns", json={"background": True})
    assert resp.status_code == 409


def test_task_timestamps_are_utc_aware():
    stamp = datetime.fromisoformat(task_service._now_iso())
    assert stamp.tzinfo is not None
    assert stamp.utcoffset() == timedelta(0)
