from __future__ import annotations

import asyncio
import time
from uuid import uuid4

import httpx


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


async def login(client: httpx.AsyncClient, user_id: str) -> str:
    response = await client.post("/api/directory/dev-login", json={"user_id": user_id})
    assert_status(response, 200)
    return response.json()["access_token"]


async def bootstrap_admin(client: httpx.AsyncClient, prefix: str) -> tuple[str, str]:
    """Initialize an empty directory and return (root department id, admin token)."""
    run_id = uuid4().hex[:8]
    response = await client.post(
        "/api/directory/bootstrap",
        json={
            "department_name": f"{prefix}-head-office-{run_id}",
            "email": f"{prefix}-admin-{run_id}@example.com",
            "name": f"{prefix} admin",
        },
    )
    assert_status(response, 201)
    payload = response.json()
    token = await login(client, payload["user"]["id"])
    return payload["department"]["id"], token


async def create_department(client: httpx.AsyncClient, token: str, name: str, parent_id: str | None) -> str:
    response = await client.post(
        "/api/directory/departments",
        json={"name": name, "parent_id": parent_id},
        headers=auth_headers(token),
    )
    assert_status(response, 201)
    return response.json()["id"]


async def create_user(
    client: httpx.AsyncClient,
    token: str,
    *,
    name: str,
    department_id: str,
    role: str = "STAFF",
) -> str:
    response = await client.post(
        "/api/directory/users",
        json={
            "email": f"{name.lower().replace(' ', '.')}-{uuid4().hex[:6]}@example.com",
            "name": name,
            "department_id": department_id,
            "role": role,
        },
        headers=auth_headers(token),
    )
    assert_status(response, 201)
    return response.json()["id"]
