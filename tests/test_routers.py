import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from tracker.core.results import Busy, Conflict, InternalError, NotFound
from tracker.main import create_app
from tracker.routers.common import unwrap

ACTOR = {"X-Actor-Id": "alice"}


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


@pytest.fixture
def task(client):
    response = client.post("/tasks/", json={"title": "Write report", "project_id": "p1"}, headers=ACTOR)
    assert response.status_code == 201
    return response.json()


class TestTasksApi:
    def test_create_returns_version_one(self, task):
        assert task["version"] == 1
        assert task["created_by"] == "alice"
        assert task["status"] == "todo"

    def test_create_requires_actor(self, client):
        response = client.post("/tasks/", json={"title": "x", "project_id": "p1"})
        assert response.status_code == 422

    def test_get_and_list(self, client, task):
        assert client.get(f"/tasks/{task['id']}").json()["title"] == "Write report"
        listed = client.get("/tasks/", params={"project_id": "p1"}).json()
        assert [t["id"] for t in listed] == [task["id"]]
        assert client.get("/tasks/", params={"project_id": "p2"}).json() == []

    def test_get_missing_is_404(self, client):
        assert client.get("/tasks/missing").status_code == 404

    def test_patch_and_stale_patch(self, client, task):
        response = client.patch(
            f"/tasks/{task['id']}", json={"version": 1, "title": "A"}, headers=ACTOR
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2

        stale = client.patch(
            f"/tasks/{task['id']}", json={"version": 1, "title": "B"}, headers=ACTOR
        )
        assert stale.status_code == 409
        assert stale.json()["detail"]["current_version"] == 2
        assert client.get(f"/tasks/{task['id']}").json()["title"] == "A"

    def test_patch_requires_version(self, client, task):
        response = client.patch(f"/tasks/{task['id']}", json={"title": "A"}, headers=ACTOR)
        assert response.status_code == 422

    def test_patch_null_title_is_rejected(self, client, task):
        response = client.patch(
            f"/tasks/{task['id']}", json={"version": 1, "title": None}, headers=ACTOR
        )
        assert response.status_code == 422
        assert client.get(f"/tasks/{task['id']}").json()["version"] == 1

    def test_complete(self, client, task):
        response = client.post(f"/tasks/{task['id']}/complete", params={"version": 1}, headers=ACTOR)
        assert response.status_code == 200
        assert response.json()["status"] == "done"

    def test_delete_then_404(self, client, task):
        response = client.delete(f"/tasks/{task['id']}", params={"version": 1}, headers=ACTOR)
        assert response.status_code == 204

        assert client.get(f"/tasks/{task['id']}").status_code == 404
        again = client.delete(f"/tasks/{task['id']}", params={"version": 2}, headers=ACTOR)
        assert again.status_code == 404


class TestOtherEntities:
    def test_project_lifecycle(self, client):
        created = client.post(
            "/projects/",
            json={"name": "Apollo", "owner_id": "u1", "workspace_id": "w1"},
            headers=ACTOR,
        ).json()
        patched = client.patch(
            f"/projects/{created['id']}", json={"version": 1, "status": "active"}, headers=ACTOR
        )
        assert patched.json()["status"] == "active"
        assert client.get("/projects/", params={"workspace_id": "w1"}).json()[0]["version"] == 2

    def test_comment_lifecycle(self, client, task):
        created = client.post(
            "/comments/",
            json={"content": "Looks good", "task_id": task["id"], "author_id": "alice"},
            headers=ACTOR,
        ).json()
        listed = client.get("/comments/", params={"task_id": task["id"]}).json()
        assert [c["id"] for c in listed] == [created["id"]]

        response = client.delete(f"/comments/{created['id']}", params={"version": 1}, headers=ACTOR)
        assert response.status_code == 204
        assert client.get("/comments/", params={"task_id": task["id"]}).json() == []


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "ok", "kv": "ok"}


class TestResultMapping:
    @pytest.mark.parametrize(
        "result, status_code",
        [
            (NotFound(), 404),
            (Conflict(current_version=3), 409),
            (Busy(), 503),
            (InternalError("boom"), 500),
            (InternalError("slow store", retryable=True), 503),
        ],
    )
    def test_error_results(self, result, status_code):
        with pytest.raises(HTTPException) as exc_info:
            unwrap(result, "Task", "t1")
        assert exc_info.value.status_code == status_code

    def test_busy_sets_retry_after(self):
        with pytest.raises(HTTPException) as exc_info:
            unwrap(Busy(), "Task", "t1")
        assert exc_info.value.headers == {"Retry-After": "1"}
