"""Pytest fixtures for integration tests.

Queries and the orchestration core run against a file-backed SQLite
database in a temporary directory, so concurrent pipeline tasks get their
own connections the way they do in production. Git, sandbox, and terminal
backends are replaced by recording fakes that implement the same
protocols; tests that need real git use GitPython directly.
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agentos.config import AgentosConfig, SetupConfig, StatusConfig
from agentos.database.models import Base
from agentos.errors import ContainerErrorCode, ResourceExhaustedError, WorktreeCreationError
from agentos.orchestrator.session_service import SessionService
from agentos.orchestrator.setup_pipeline import SetupPipeline
from agentos.orchestrator.status_hub import StatusHub
from agentos.orchestrator.supervisor import BackgroundTaskSupervisor
from agentos.pipeline.container import ContainerHealthResult, SandboxRequest
from agentos.pipeline.env_setup import DependencyBootstrapper
from agentos.pipeline.worktree import WorktreeDeletion, WorktreeInfo, slugify
from agentos.web.app import create_app


class FakeWorktreeBackend:
    """Worktree backend that creates plain directories and records calls."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path
        self.is_repo = True
        self.create_error: Exception | None = None
        self.uncommitted = False
        self.branch_changes = False
        self.branch = "main"
        self.created: list[WorktreeInfo] = []
        self.deleted: list[tuple[Path, bool]] = []
        self.renamed: list[tuple[str, str]] = []

    def is_managed_worktree(self, path: Path) -> bool:
        try:
            Path(path).relative_to(self.base_path)
            return True
        except ValueError:
            return False

    def branch_name_for(self, feature_name: str) -> str:
        return f"feature/{slugify(feature_name)}"

    async def is_repository(self, path: Path) -> bool:
        return self.is_repo

    async def create_worktree(
        self,
        source_path: Path,
        feature_name: str,
        base_branch: str,
        project_name: str | None = None,
    ) -> WorktreeInfo:
        if self.create_error is not None:
            raise self.create_error
        slug = slugify(feature_name)
        if not slug:
            raise WorktreeCreationError("empty feature name")
        path = self.base_path / f"{slugify(project_name or 'repo')}-{slug}"
        path.mkdir(parents=True)
        info = WorktreeInfo(
            path=path,
            branch_name=self.branch_name_for(feature_name),
            base_branch=base_branch,
            source_path=Path(source_path),
        )
        self.created.append(info)
        return info

    async def delete_worktree(
        self,
        path: Path,
        repo_common_dir: Path | None = None,
        delete_branch: bool = False,
    ) -> WorktreeDeletion:
        self.deleted.append((Path(path), delete_branch))
        existed = Path(path).exists()
        if existed:
            Path(path).rmdir()
        return WorktreeDeletion(removed=existed, branch_deleted=delete_branch)

    async def has_uncommitted_changes(self, path: Path) -> bool:
        return self.uncommitted

    async def branch_has_changes(self, path: Path, base_branch: str) -> bool:
        return self.branch_changes

    async def current_branch(self, path: Path) -> str:
        return self.branch

    async def common_dir(self, path: Path) -> Path:
        return Path(path) / ".git"

    async def init_submodules(self, path: Path) -> None:
        return None

    async def rename_branch(self, path: Path, old_name: str, new_name: str) -> None:
        self.renamed.append((old_name, new_name))
        self.branch = new_name


class FakeSandboxBackend:
    """Sandbox backend with switchable availability, health, and failures."""

    def __init__(self, max_containers: int | None = 5) -> None:
        self.max_containers = max_containers
        self.available = True
        self.healthy = True
        self.create_error: Exception | None = None
        self.requests: list[SandboxRequest] = []
        self.active: set[str] = set()
        self.destroyed: list[str] = []

    async def is_backend_available(self) -> bool:
        return self.available

    async def count_active_containers(self) -> int:
        return len(self.active)

    async def create_container(self, request: SandboxRequest) -> str:
        self.requests.append(request)
        if self.create_error is not None:
            raise self.create_error
        if self.max_containers is not None and len(self.active) >= self.max_containers:
            raise ResourceExhaustedError(len(self.active), self.max_containers)
        container_id = f"ctr-{request.session_id[:8]}"
        self.active.add(container_id)
        return container_id

    async def verify_container_health(
        self, container_id: str, worktree_path: Path, session_id: str | None = None
    ) -> ContainerHealthResult:
        if self.healthy:
            return ContainerHealthResult(healthy=True)
        return ContainerHealthResult(
            healthy=False,
            error="Egress firewall is not active",
            error_code=ContainerErrorCode.CONTAINER_UNHEALTHY,
        )

    async def destroy_container(self, container_id: str, session_id: str) -> bool:
        self.destroyed.append(container_id)
        self.active.discard(container_id)
        return True

    def wrap_command(
        self, container_id: str | None, argv: list[str], cwd: Path
    ) -> tuple[list[str], Path]:
        if container_id is None:
            return argv, cwd
        return ["docker", "exec", container_id, *argv], cwd


class FakeProcessBackend:
    """Process backend keeping a set of live session names."""

    def __init__(self) -> None:
        self.running: dict[str, tuple[list[str], Path]] = {}
        self.killed: list[str] = []
        self.selected: list[tuple[str, str]] = []
        self.start_error: Exception | None = None

    async def start_session(self, name: str, argv: list[str], cwd: Path) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.running[name] = (argv, cwd)

    async def has_session(self, name: str) -> bool:
        return name in self.running

    async def kill_session(self, name: str) -> bool:
        self.killed.append(name)
        return self.running.pop(name, None) is not None

    async def select_window(self, name: str, slot: str) -> None:
        self.selected.append((name, slot))


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a SQLite async engine in a temporary directory.

    Yields:
        AsyncEngine with every table created.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'agentos-test.db'}",
        echo=False,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def source_repo(tmp_path: Path) -> Path:
    """Directory standing in for the user's repository."""
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def worktrees(tmp_path: Path) -> FakeWorktreeBackend:
    return FakeWorktreeBackend(tmp_path / "worktrees")


@pytest.fixture
def sandbox() -> FakeSandboxBackend:
    return FakeSandboxBackend()


@pytest.fixture
def processes() -> FakeProcessBackend:
    return FakeProcessBackend()


@pytest.fixture
def hub() -> StatusHub:
    return StatusHub(StatusConfig(heartbeat_interval_seconds=1))


@pytest.fixture
def supervisor() -> BackgroundTaskSupervisor:
    return BackgroundTaskSupervisor()


@pytest.fixture
def pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    worktrees: FakeWorktreeBackend,
    sandbox: FakeSandboxBackend,
    processes: FakeProcessBackend,
    hub: StatusHub,
) -> SetupPipeline:
    return SetupPipeline(
        session_factory,
        worktrees=worktrees,
        sandbox=sandbox,
        processes=processes,
        bootstrapper=DependencyBootstrapper(SetupConfig(copy_env_files=False)),
        hub=hub,
    )


@pytest_asyncio.fixture
async def service(
    session_factory: async_sessionmaker[AsyncSession],
    pipeline: SetupPipeline,
    supervisor: BackgroundTaskSupervisor,
    hub: StatusHub,
) -> AsyncGenerator[SessionService, None]:
    """SessionService over the fake backends.

    Pipeline tasks still running at teardown are cancelled.
    """
    svc = SessionService(session_factory, pipeline, supervisor, hub)
    yield svc
    await supervisor.cancel_all()


@pytest_asyncio.fixture
async def async_client(service: SessionService) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the FastAPI app wired to the test service.

    ASGITransport does not run the lifespan; the injected service is
    attached to ``app.state`` when the app is created.
    """
    app = create_app(AgentosConfig(), service=service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
