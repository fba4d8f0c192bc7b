"""Tests for the CLI commands."""

from io import StringIO

import pytest
from rich.console import Console
from typer.testing import CliRunner

from xynoxa_sync.cli.app import app
from xynoxa_sync.cli.commands import auth, config, files, folder, status, sync
from xynoxa_sync.service import SyncApp
from xynoxa_sync.services.secret_vault import AUTH_TOKEN_KEY
from xynoxa_sync.sync.sync_service import FolderSyncState
from xynoxa_sync.sync.utils import SyncReport

from conftest import FakeRemote

runner = CliRunner()

TOKEN = "xyn-cli-token"


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def sync_app_factory(sync_config, memory_vault, remote, monkeypatch):
    """Point every command at a SyncApp using the fake remote and in-memory vault."""

    def factory(on_report=None) -> SyncApp:
        return SyncApp(
            sync_config,
            vault=memory_vault,
            remote_factory=lambda url, token: remote,
            on_report=on_report,
        )

    for module in (auth, config, files, folder, sync):
        monkeypatch.setattr(module, "get_sync_app", factory)
    return factory


@pytest.fixture
def logged_in(sync_app_factory, memory_vault, config_home):
    sync_app = sync_app_factory()
    sync_app.save_config(url="https://cloud.example.com", path=str(config_home / "Xynoxa"))
    sync_app.save_config(completed=True)
    memory_vault.store_secret(AUTH_TOKEN_KEY, TOKEN)
    return sync_app


@pytest.fixture
def console(monkeypatch):
    """Capture rich output of the status and sync modules."""
    output = StringIO()
    test_console = Console(file=output, width=200)
    monkeypatch.setattr(status, "console", test_console)
    monkeypatch.setattr(sync, "console", test_console)
    return output


def test_config_updates_and_shows(sync_app_factory, sync_config):
    result = runner.invoke(
        app, ["config", "--server-url", "https://cloud.example.com/", "--path", "~/Xynoxa"]
    )

    assert result.exit_code == 0, result.output
    assert "https://cloud.example.com" in result.output
    assert sync_config.config_file.exists()


def test_config_rejects_invalid_url(sync_app_factory):
    result = runner.invoke(app, ["config", "--server-url", "cloud.example.com"])

    assert result.exit_code == 1


def test_login_stores_token(sync_app_factory, memory_vault):
    sync_app_factory().save_config(url="https://cloud.example.com")

    result = runner.invoke(app, ["login", "--token", TOKEN])

    assert result.exit_code == 0, result.output
    assert memory_vault.secrets[AUTH_TOKEN_KEY] == TOKEN


def test_login_rejects_bad_token(sync_app_factory, memory_vault):
    sync_app_factory().save_config(url="https://cloud.example.com")

    result = runner.invoke(app, ["login", "--token", "not-a-token"])

    assert result.exit_code == 1
    assert memory_vault.secrets == {}


def test_logout(logged_in, memory_vault):
    result = runner.invoke(app, ["logout"])

    assert result.exit_code == 0
    assert memory_vault.secrets == {}


def test_sync_uploads_new_files(logged_in, remote, config_home, console):
    (config_home / "Xynoxa").mkdir(exist_ok=True)
    (config_home / "Xynoxa" / "hello.txt").write_bytes(b"hello")

    result = runner.invoke(app, ["sync", "--verbose"])

    assert result.exit_code == 0, result.output
    assert remote.tree() == {"hello.txt": b"hello"}
    assert "hello.txt" in console.getvalue()

    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0
    assert "everything up to date" in console.getvalue()


def test_sync_requires_login(sync_app_factory):
    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 1


def test_folder_add_and_list(logged_in, config_home):
    result = runner.invoke(app, ["folder", "add", "Team", str(config_home / "Team")])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["folder", "list"])
    assert result.exit_code == 0
    assert "Team" in result.output
    assert "Xynoxa" in result.output


def test_files_lists_index(logged_in, config_home):
    (config_home / "Xynoxa").mkdir(exist_ok=True)
    (config_home / "Xynoxa" / "hello.txt").write_bytes(b"hello")
    runner.invoke(app, ["sync"])

    result = runner.invoke(app, ["files"])

    assert result.exit_code == 0, result.output
    assert "hello.txt" in result.output


def test_status_without_state(sync_config, console):
    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "No sync status yet" in console.getvalue()


def test_status_shows_folder_states(sync_config, console):
    state = FolderSyncState(
        group_folder_id=1,
        name="Xynoxa",
        local_root="/home/user/Xynoxa",
        synced_files=3,
        halted=True,
        requires_reauth=True,
    )
    state.add_event("a.txt", "new", "success")
    sync_config.status_dir.mkdir(parents=True, exist_ok=True)
    (sync_config.status_dir / "folder-1.json").write_text(state.model_dump_json())
    (sync_config.status_dir / "folder-2.json").write_text("{broken")

    result = runner.invoke(app, ["status", "--verbose"])

    assert result.exit_code == 0
    output = console.getvalue()
    assert "Xynoxa" in output
    assert "3 synced" in output
    assert "login required" in output
    assert "a.txt" in output


def test_display_sync_summary(console):
    sync.display_sync_summary(1, SyncReport(new={"a.txt"}, deleted={"b.txt"}))

    output = console.getvalue()
    assert "synced 2 files" in output
    assert "1 new" in output
    assert "1 deleted" in output
