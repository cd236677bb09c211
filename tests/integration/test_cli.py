"""Integration tests for CLI commands.

Commands run through Typer's CliRunner against a SQLite database named in
a TOML config file, the same way an operator would point the CLI at a
deployment.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from uuid import UUID

import pytest
from typer.testing import CliRunner

from agentos.config import DatabaseConfig
from agentos.database.connection import get_engine, get_session_factory, init_db
from agentos.database.models.session import LifecycleStatus
from agentos.database.queries.session import create_session, get_session
from agentos.main import app


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def config_file(tmp_path: Path, database_url: str) -> Path:
    path = tmp_path / "agentos.toml"
    path.write_text(
        f'[database]\nurl = "{database_url}"\n\n'
        '[sandbox]\nmode = "native"\n\n'
        '[logging]\nlevel = "WARNING"\n'
    )
    return path


def _seed(database_url: str, *rows: tuple[str, LifecycleStatus]) -> list[str]:
    async def seed() -> list[str]:
        engine = get_engine(DatabaseConfig(url=database_url))
        try:
            await init_db(engine)
            ids = []
            for name, status in rows:
                async with get_session_factory(engine)() as db:
                    row = await create_session(
                        db, name=name, working_directory="/src/app", lifecycle_status=status
                    )
                ids.append(str(row.id))
            return ids
        finally:
            await engine.dispose()

    return asyncio.run(seed())


def _lifecycle(database_url: str, session_id: str) -> LifecycleStatus | None:
    async def load() -> LifecycleStatus | None:
        engine = get_engine(DatabaseConfig(url=database_url))
        try:
            async with get_session_factory(engine)() as db:
                row = await get_session(db, UUID(session_id))
            return row.lifecycle_status if row else None
        finally:
            await engine.dispose()

    return asyncio.run(load())


class TestSessionsCommand:
    def test_empty_database(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(app, ["--config", str(config_file), "sessions"])

        assert result.exit_code == 0
        assert "No sessions found" in result.output

    def test_lists_sessions(
        self, cli_runner: CliRunner, config_file: Path, database_url: str
    ) -> None:
        ready_id, failed_id = _seed(
            database_url, ("alpha", LifecycleStatus.ready), ("beta", LifecycleStatus.failed)
        )

        result = cli_runner.invoke(app, ["--config", str(config_file), "sessions"])

        assert result.exit_code == 0
        assert ready_id[:8] in result.output
        assert failed_id[:8] in result.output

    def test_status_filter(
        self, cli_runner: CliRunner, config_file: Path, database_url: str
    ) -> None:
        ready_id, failed_id = _seed(
            database_url, ("alpha", LifecycleStatus.ready), ("beta", LifecycleStatus.failed)
        )

        result = cli_runner.invoke(
            app, ["--config", str(config_file), "sessions", "--status", "failed"]
        )

        assert result.exit_code == 0
        assert failed_id[:8] in result.output
        assert ready_id[:8] not in result.output


class TestRecoverCommand:
    def test_reports_counts(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(app, ["--config", str(config_file), "recover"])

        assert result.exit_code == 0
        assert "Recovery" in result.output
        assert "deleting cleaned" in result.output

    def test_interrupted_deletion_is_finished(
        self, cli_runner: CliRunner, config_file: Path, database_url: str
    ) -> None:
        (session_id,) = _seed(database_url, ("gone", LifecycleStatus.deleting))

        result = cli_runner.invoke(app, ["--config", str(config_file), "recover"])

        assert result.exit_code == 0
        assert _lifecycle(database_url, session_id) is None


class TestConfigOption:
    def test_missing_config_file_rejected(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(
            app, ["--config", str(tmp_path / "missing.toml"), "sessions"]
        )

        assert result.exit_code != 0

    def test_invalid_config_reported(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.toml"
        path.write_text('[sandbox]\nmode = "vm"\n')

        result = cli_runner.invoke(app, ["--config", str(path), "sessions"])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output
