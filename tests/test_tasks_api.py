from sqlalchemy.exc import OperationalError

from taskboard.models import TaskPriority, TaskStatus
from taskboard.queues.queue import TASK_STATUS_UPDATE
from taskboard.services.task_service import TaskService


async def _create(client, **fields):
    body = {"title": "Write report", **fields}
    response = await client.post("/tasks/", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateAndRead:
    async def test_create_defaults_to_pending_and_owner(self, client, queue):
        task = await _create(client, due_date="2026-02-01T09:00:00+00:00")

        assert task["status"] == "pending"
        assert task["priority"] == "medium"
        assert task["user_id"] == "user-1"

        (job,) = queue.jobs
        assert job.function == TASK_STATUS_UPDATE
        assert job.payload == {"task_id": task["id"], "status": "pending"}

    async def test_create_rejects_empty_title(self, client):
        response = await client.post("/tasks/", json={"title": ""})
        assert response.status_code == 422

    async def test_get_task(self, client):
        created = await _create(client)

        response = await client.get(f"/tasks/{created['id']}")

        assert response.status_code == 200
        assert response.json()["title"] == "Write report"

    async def test_get_missing_task(self, client):
        response = await client.get("/tasks/999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Task with id 999 not found"


class TestListing:
    async def test_filters_and_pagination(self, client):
        for i in range(3):
            await _create(client, title=f"high {i}", priority="high")
        await _create(client, title="low", priority="low", status="completed")

        response = await client.get("/tasks/", params={"priority": "high", "limit": 2})
        body = response.json()

        assert response.status_code == 200
        assert body["count"] == 3
        assert body["page"] == 1
        assert body["limit"] == 2
        assert len(body["data"]) == 2

        second = (await client.get("/tasks/", params={"priority": "high", "limit": 2, "page": 2})).json()
        assert len(second["data"]) == 1

        completed = (await client.get("/tasks/", params={"status": "completed"})).json()
        assert [t["title"] for t in completed["data"]] == ["low"]

    async def test_limit_is_capped(self, client):
        await _create(client)
        body = (await client.get("/tasks/", params={"limit": 500})).json()
        assert body["limit"] == 100

    async def test_invalid_status_filter(self, client):
        response = await client.get("/tasks/", params={"status": "archived"})
        assert response.status_code == 422

    async def test_stats(self, client):
        await _create(client, priority="high")
        await _create(client, status="completed")
        await _create(client, status="in_progress", priority="high")

        stats = (await client.get("/tasks/stats")).json()

        assert stats == {
            "total": 3,
            "pending": 1,
            "in_progress": 1,
            "completed": 1,
            "overdue": 0,
            "high_priority": 2,
        }


class TestUpdates:
    async def test_status_change_is_published_and_cache_dropped(self, client, queue):
        task = await _create(client)
        await client.get(f"/tasks/{task['id']}")  # warm the cache

        response = await client.patch(f"/tasks/{task['id']}", json={"status": "in_progress"})

        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"
        assert queue.jobs[-1].payload == {"task_id": task["id"], "status": "in_progress"}
        assert (await client.get(f"/tasks/{task['id']}")).json()["status"] == "in_progress"

    async def test_title_change_does_not_publish(self, client, queue):
        task = await _create(client)

        await client.patch(f"/tasks/{task['id']}", json={"title": "Renamed"})

        assert len(queue.jobs) == 1

    async def test_leaving_overdue_clears_sweep_markers(self, client, add_task, load_task):
        from datetime import datetime, timezone

        marked = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        task = await add_task(
            "late",
            status=TaskStatus.OVERDUE,
            overdue_marked_at=marked,
            overdue_enqueued_at=marked,
        )

        await client.patch(f"/tasks/{task.id}", json={"status": "pending"})

        stored = await load_task(task.id)
        assert stored.status == TaskStatus.PENDING
        assert stored.overdue_marked_at is None
        assert stored.overdue_enqueued_at is None

    async def test_complete_endpoint(self, client):
        task = await _create(client)

        response = await client.post(f"/tasks/{task['id']}/complete")

        assert response.json()["status"] == "completed"

    async def test_null_for_required_fields_is_rejected(self, client, load_task):
        task = await _create(client)

        for field in ("title", "status", "priority"):
            response = await client.patch(f"/tasks/{task['id']}", json={field: None})
            assert response.status_code == 422, field

        stored = await load_task(task["id"])
        assert stored.title == "Write report"
        assert stored.status == TaskStatus.PENDING

    async def test_due_date_can_be_cleared(self, client):
        task = await _create(client, due_date="2026-02-01T09:00:00+00:00")

        response = await client.patch(f"/tasks/{task['id']}", json={"due_date": None})

        assert response.status_code == 200
        assert response.json()["due_date"] is None

    async def test_update_missing_task(self, client):
        response = await client.patch("/tasks/999", json={"title": "x"})
        assert response.status_code == 404

    async def test_delete(self, client):
        task = await _create(client)

        assert (await client.delete(f"/tasks/{task['id']}")).status_code == 204
        assert (await client.delete(f"/tasks/{task['id']}")).status_code == 404
        assert (await client.get(f"/tasks/{task['id']}")).status_code == 404


class TestBatch:
    async def test_batch_complete(self, client, load_task):
        ids = [(await _create(client))["id"] for _ in range(2)]

        response = await client.post("/tasks/batch", json={"tasks": ids + [999], "action": "complete"})

        assert response.json() == {"success": True, "action": "complete", "affected": 2}
        for task_id in ids:
            assert (await load_task(task_id)).status == TaskStatus.COMPLETED

    async def test_batch_complete_publishes_changed_tasks_only(self, client, queue):
        ids = [(await _create(client))["id"] for _ in range(3)]
        await client.post(f"/tasks/{ids[0]}/complete")
        published = len(queue.jobs)

        response = await client.post("/tasks/batch", json={"tasks": ids, "action": "complete"})

        assert response.json()["affected"] == 2
        assert len(queue.batches[-1]) == 2
        new_jobs = queue.jobs[published:]
        assert [job.function for job in new_jobs] == [TASK_STATUS_UPDATE] * 2
        assert sorted(job.payload["task_id"] for job in new_jobs) == ids[1:]
        assert {job.payload["status"] for job in new_jobs} == {"completed"}

    async def test_batch_delete(self, client, load_task):
        ids = [(await _create(client))["id"] for _ in range(3)]

        response = await client.post("/tasks/batch", json={"tasks": ids[:2], "action": "delete"})

        assert response.json()["affected"] == 2
        assert await load_task(ids[0]) is None
        assert (await load_task(ids[2])).priority == TaskPriority.MEDIUM

    async def test_batch_rejects_unknown_action(self, client):
        response = await client.post("/tasks/batch", json={"tasks": [1], "action": "archive"})
        assert response.status_code == 422

    async def test_batch_rejects_empty_list(self, client):
        response = await client.post("/tasks/batch", json={"tasks": [], "action": "delete"})
        assert response.status_code == 422


class TestRoles:
    async def test_missing_identity(self, client):
        response = await client.get("/tasks/", headers={"X-User-Id": ""})
        assert response.status_code == 401

    async def test_missing_role(self, client):
        response = await client.get("/tasks/", headers={"X-User-Role": ""})
        assert response.status_code == 403
        assert response.json()["detail"] == "Missing role on user"

    async def test_unknown_role(self, client):
        response = await client.get("/tasks/", headers={"X-User-Role": "guest"})
        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient role"

    async def test_admin_allowed(self, client):
        response = await client.get("/tasks/", headers={"X-User-Role": "admin"})
        assert response.status_code == 200


async def test_health(client):
    assert (await client.get("/health")).json() == {"status": "healthy"}


async def test_database_error_returns_500(client, monkeypatch):
    async def broken_stats(db):
        raise OperationalError("SELECT", {}, Exception("db down"))

    monkeypatch.setattr(TaskService, "get_stats", staticmethod(broken_stats))

    response = await client.get("/tasks/stats")

    assert response.status_code == 500
    assert response.json() == {"detail": "Unable to process the request at this time"}
