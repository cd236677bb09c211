"""Integration tests for the session API endpoints.

Requests go through the full FastAPI stack (middleware, routing, error
mapping) into a SessionService backed by SQLite and fake backends.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
from httpx import AsyncClient

from agentos.database.queries.session import create_session
from agentos.orchestrator.supervisor import BackgroundTaskSupervisor


def _payload(source: Path, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": "Login form",
        "working_directory": str(source),
        "use_worktree": True,
        "feature_name": "login form",
        "auto_approve": True,
        "allowed_domains": ["pypi.org"],
    }
    payload.update(overrides)
    return payload


async def _ready_session(
    client: AsyncClient, supervisor: BackgroundTaskSupervisor, source: Path, **overrides: Any
) -> dict[str, Any]:
    response = await client.post("/sessions/", json=_payload(source, **overrides))
    assert response.status_code == 201
    await supervisor.join(timeout=5)
    response = await client.get(f"/sessions/{response.json()['id']}")
    assert response.json()["lifecycle_status"] == "ready"
    return response.json()


@pytest.mark.asyncio
class TestCreateAndRead:
    async def test_create_returns_creating_session(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        source_repo: Path,
    ) -> None:
        response = await async_client.post("/sessions/", json=_payload(source_repo))

        assert response.status_code == 201
        data = response.json()
        assert data["lifecycle_status"] == "creating"
        assert data["setup_status"] == "pending"
        assert data["auto_approve"] is True
        assert data["allowed_domains"] == ["pypi.org"]
        assert response.headers["X-Correlation-ID"]

        await supervisor.join(timeout=5)
        response = await async_client.get(f"/sessions/{data['id']}")
        assert response.status_code == 200
        ready = response.json()
        assert ready["lifecycle_status"] == "ready"
        assert ready["sandbox_status"] == "ready"
        assert ready["container_health"] == "healthy"
        assert ready["branch_name"] == "feature/login-form"

    async def test_precondition_failure_is_400(
        self, async_client: AsyncClient, source_repo: Path
    ) -> None:
        response = await async_client.post(
            "/sessions/", json=_payload(source_repo, use_worktree=False)
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "precondition_failed"
        assert detail["details"] == {"field": "use_worktree"}

    async def test_invalid_mount_is_400(
        self, async_client: AsyncClient, source_repo: Path
    ) -> None:
        response = await async_client.post(
            "/sessions/",
            json=_payload(
                source_repo,
                extra_mounts=[{"hostPath": "/data", "containerPath": "/workspace"}],
            ),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_mounts"

    async def test_request_schema_validated(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/sessions/", json={"working_directory": "/src"})

        assert response.status_code == 422

    async def test_missing_session_is_404(self, async_client: AsyncClient) -> None:
        response = await async_client.get(f"/sessions/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "session_not_found"

    async def test_list_filters_by_lifecycle(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        session_factory,
        source_repo: Path,
    ) -> None:
        ready = await _ready_session(async_client, supervisor, source_repo)
        async with session_factory() as db:
            await create_session(db, name="pending", working_directory=str(source_repo))

        all_rows = (await async_client.get("/sessions/")).json()
        ready_rows = (await async_client.get("/sessions/?lifecycle_status=ready")).json()

        assert len(all_rows) == 2
        assert [r["id"] for r in ready_rows] == [ready["id"]]


@pytest.mark.asyncio
class TestMutations:
    async def test_rename(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        source_repo: Path,
    ) -> None:
        session = await _ready_session(async_client, supervisor, source_repo)

        response = await async_client.patch(
            f"/sessions/{session['id']}", json={"name": "Signup Flow"}
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Signup Flow"

    async def test_rename_creating_session_is_409(
        self, async_client: AsyncClient, session_factory, source_repo: Path
    ) -> None:
        async with session_factory() as db:
            row = await create_session(db, name="busy", working_directory=str(source_repo))

        response = await async_client.patch(f"/sessions/{row.id}", json={"name": "x"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "lifecycle_conflict"

    async def test_fork(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        source_repo: Path,
    ) -> None:
        parent = await _ready_session(async_client, supervisor, source_repo)

        response = await async_client.post(
            f"/sessions/{parent['id']}/fork", json={"mode": "direct"}
        )

        assert response.status_code == 201
        child = response.json()
        assert child["parent_session_id"] == parent["id"]
        assert child["worktree_path"] == parent["worktree_path"]
        await supervisor.join(timeout=5)

    async def test_reboot_ready_session_is_409(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        source_repo: Path,
    ) -> None:
        session = await _ready_session(async_client, supervisor, source_repo)

        response = await async_client.post(f"/sessions/{session['id']}/reboot")

        assert response.status_code == 409

    async def test_worktree_status_then_delete(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        source_repo: Path,
    ) -> None:
        session = await _ready_session(async_client, supervisor, source_repo)

        status = await async_client.get(f"/sessions/{session['id']}/worktree-status")
        assert status.status_code == 200
        assert status.json() == {
            "has_worktree": True,
            "has_uncommitted_changes": False,
            "branch_has_changes": False,
            "sibling_count": 0,
        }

        response = await async_client.delete(f"/sessions/{session['id']}")
        assert response.status_code == 200
        result = response.json()
        assert result["worktree_deleted"] is True
        assert result["branch_deleted"] is True

        assert (await async_client.get(f"/sessions/{session['id']}")).status_code == 404

    async def test_attach(
        self,
        async_client: AsyncClient,
        supervisor: BackgroundTaskSupervisor,
        source_repo: Path,
    ) -> None:
        session = await _ready_session(async_client, supervisor, source_repo)

        response = await async_client.post(
            f"/sessions/{session['id']}/attach", json={"slot": "pane-1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["slot"] == "pane-1"
        assert data["tmux_name"] == f"claude-{session['id']}"


@pytest.mark.asyncio
async def test_status_snapshot_includes_ready_session(
    async_client: AsyncClient,
    supervisor: BackgroundTaskSupervisor,
    source_repo: Path,
) -> None:
    session = await _ready_session(async_client, supervisor, source_repo)

    response = await async_client.get("/status/")

    assert response.status_code == 200
    snapshot = response.json()[session["id"]]
    assert snapshot["status"] == "idle"
    assert snapshot["lifecycle_status"] == "ready"
    assert snapshot["setup_status"] == "ready"
