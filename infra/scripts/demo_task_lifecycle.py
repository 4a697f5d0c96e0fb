from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

import httpx
from demo_common import assert_status, auth_headers, bootstrap_admin, create_department, create_user, login, wait_ok


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await wait_ok(client, "/healthz")

        root_id, admin_token = await bootstrap_admin(client, "lifecycle")
        engineering_id = await create_department(client, admin_token, "Engineering", root_id)
        platform_id = await create_department(client, admin_token, "Platform", engineering_id)

        manager_id = await create_user(
            client, admin_token, name="Mina Manager", department_id=engineering_id, role="MANAGER"
        )
        staff_id = await create_user(client, admin_token, name="Sam Staff", department_id=platform_id)
        manager_token = await login(client, manager_id)
        staff_token = await login(client, staff_id)

        subordinates = await client.get(
            f"/api/directory/departments/{engineering_id}/subordinates",
            headers=auth_headers(manager_token),
        )
        assert_status(subordinates, 200)
        if subordinates.json()["subordinate_ids"] != [platform_id]:
            raise RuntimeError(f"unexpected subordinates: {subordinates.json()}")

        project_resp = await client.post(
            "/api/projects",
            json={"name": f"Lifecycle demo {datetime.now(UTC):%H%M%S}", "priority": 7},
            headers=auth_headers(manager_token),
        )
        assert_status(project_resp, 201)
        project_id = project_resp.json()["id"]

        due = datetime(2025, 12, 31, 17, 0, tzinfo=UTC)
        task_resp = await client.post(
            "/api/tasks",
            json={
                "title": "Weekly on-call handover",
                "description": "Rotate the pager and review open incidents.",
                "priority": 6,
                "due_date": due.isoformat(),
                "assignee_ids": [staff_id],
                "project_id": project_id,
                "recurring_interval": 7,
            },
            headers=auth_headers(manager_token),
        )
        assert_status(task_resp, 201)
        task_id = task_resp.json()["id"]

        # Staff assignee may comment but not edit.
        comment_resp = await client.post(
            f"/api/tasks/{task_id}/comments",
            json={"content": "Pager handed over."},
            headers=auth_headers(staff_token),
        )
        assert_status(comment_resp, 201)
        forbidden = await client.post(
            f"/api/tasks/{task_id}/status",
            json={"status": "COMPLETED"},
            headers=auth_headers(staff_token),
        )
        assert_status(forbidden, 403)

        complete_resp = await client.post(
            f"/api/tasks/{task_id}/status",
            json={"status": "COMPLETED"},
            headers=auth_headers(manager_token),
        )
        assert_status(complete_resp, 200)
        successor = complete_resp.json()["successor"]
        if successor is None:
            raise RuntimeError("recurring task did not spawn a successor")
        expected_due = (due + timedelta(days=7)).date().isoformat()
        if not successor["due_date"].startswith(expected_due):
            raise RuntimeError(f"unexpected successor due date: {successor['due_date']}")

        unread = await client.get("/api/notifications/unread", headers=auth_headers(staff_token))
        assert_status(unread, 200)
        ids = [item["id"] for item in unread.json()]
        if not ids:
            raise RuntimeError("staff assignee received no notifications")
        mark_resp = await client.post(
            "/api/notifications/read",
            json={"notification_ids": ids},
            headers=auth_headers(staff_token),
        )
        assert_status(mark_resp, 200)

    print("demo_task_lifecycle: ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
