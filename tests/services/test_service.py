"""Tests for the SyncApp control surface."""

import asyncio

import pytest
import pytest_asyncio

from xynoxa_sync.service import SyncApp, validate_token_format
from xynoxa_sync.services.exceptions import AuthError, ConfigError
from xynoxa_sync.services.secret_vault import AUTH_TOKEN_KEY

from conftest import FakeRemote

TOKEN = "xyn-0123456789abcdef"


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def factory_calls():
    return []


@pytest_asyncio.fixture
async def app(sync_config, memory_vault, remote, factory_calls):
    def remote_factory(server_url: str, token: str) -> FakeRemote:
        factory_calls.append((server_url, token))
        return remote

    app = SyncApp(sync_config, vault=memory_vault, remote_factory=remote_factory)
    yield app
    await app.shutdown()


@pytest.fixture
def configured(app, config_home):
    app.save_config(url="https://cloud.example.com/", path=str(config_home / "Xynoxa"))
    app.save_config(completed=True)
    return app


def test_validate_token_format():
    assert validate_token_format(f"  {TOKEN}\n") == TOKEN
    assert validate_token_format("syn-legacy-token") == "syn-legacy-token"
    with pytest.raises(AuthError):
        validate_token_format("bearer-abc")
    with pytest.raises(AuthError):
        validate_token_format("   ")


@pytest.mark.asyncio
async def test_login_requires_server_url(app, memory_vault):
    with pytest.raises(ConfigError):
        await app.login(TOKEN)
    assert memory_vault.secrets == {}


@pytest.mark.asyncio
async def test_login_stores_validated_token(configured, memory_vault, factory_calls):
    await configured.login(TOKEN)

    assert memory_vault.secrets == {AUTH_TOKEN_KEY: TOKEN}
    assert factory_calls == [("https://cloud.example.com", TOKEN)]
    assert await configured.check_auth() is True


@pytest.mark.asyncio
async def test_login_with_rejected_token_stores_nothing(configured, memory_vault, remote):
    remote.token_valid = False

    with pytest.raises(AuthError):
        await configured.login(TOKEN)

    assert memory_vault.secrets == {}
    assert await configured.check_auth() is False


@pytest.mark.asyncio
async def test_login_rejects_bad_prefix_without_network(configured, factory_calls):
    with pytest.raises(AuthError):
        await configured.login("abc-123")
    assert factory_calls == []


@pytest.mark.asyncio
async def test_open_requires_login(configured):
    with pytest.raises(AuthError):
        await configured.open()


@pytest.mark.asyncio
async def test_sync_once_with_default_folder(configured, remote, config_home):
    await configured.login(TOKEN)
    (config_home / "Xynoxa").mkdir(parents=True, exist_ok=True)
    (config_home / "Xynoxa" / "hello.txt").write_bytes(b"hello")

    reports = await configured.sync_once()

    (report,) = reports.values()
    assert report.new == {"hello.txt"}
    assert remote.tree() == {"hello.txt": b"hello"}
    files = await configured.get_file_list()
    assert [f.path for f in files] == ["hello.txt"]
    folders = await configured.list_group_folders()
    assert [f.name for f in folders] == ["Xynoxa"]


@pytest.mark.asyncio
async def test_start_sync_is_idempotent(configured, remote, config_home):
    await configured.login(TOKEN)

    await configured.start_sync(watch=False)
    manager = configured.manager
    tasks = [o._task for o in manager.orchestrators.values()]
    await configured.start_sync(watch=False)

    assert configured.is_running
    assert configured.manager is manager
    assert [o._task for o in manager.orchestrators.values()] == tasks
    assert len(configured.states()) == 1


@pytest.mark.asyncio
async def test_login_restarts_halted_folders(configured, remote, config_home):
    await configured.login(TOKEN)
    remote.token_valid = False

    await configured.start_sync(watch=False)
    orchestrator = next(iter(configured.manager.orchestrators.values()))
    for _ in range(100):
        if not orchestrator.is_running:
            break
        await asyncio.sleep(0.05)
    assert orchestrator.state.requires_reauth
    assert await configured.check_auth() is False

    remote.token_valid = True
    await configured.login(TOKEN)

    assert orchestrator.is_running
    assert not orchestrator.state.halted
    assert await configured.check_auth() is True


@pytest.mark.asyncio
async def test_start_sync_without_folders(app, memory_vault):
    app.save_config(url="https://cloud.example.com")
    memory_vault.store_secret(AUTH_TOKEN_KEY, TOKEN)

    with pytest.raises(ConfigError):
        await app.start_sync(watch=False)


@pytest.mark.asyncio
async def test_logout_clears_token_and_stops(configured, memory_vault):
    await configured.login(TOKEN)
    await configured.start_sync(watch=False)

    await configured.logout()

    assert memory_vault.secrets == {}
    assert not configured.is_running
    assert configured.manager is None
    assert await configured.check_auth() is False


@pytest.mark.asyncio
async def test_add_and_disable_group_folder(configured, config_home):
    await configured.login(TOKEN)

    folder = await configured.add_group_folder("Team", config_home / "Team", "remote-folder-1")
    assert folder.remote_folder_id == "remote-folder-1"
    assert sorted(f.name for f in await configured.list_group_folders()) == ["Team", "Xynoxa"]

    await configured.disable_group_folder(folder.id)
    assert folder.id not in configured.manager.orchestrators


@pytest.mark.asyncio
async def test_save_config_validates(app):
    with pytest.raises(ConfigError):
        app.save_config(url="ftp://example.com")
    with pytest.raises(ConfigError):
        app.save_config(path="  ")

    app.save_config(url="http://localhost:3000/", path="~/Xynoxa", completed=True)
    config = app.get_config()
    assert config.server_url == "http://localhost:3000"
    assert config.setup_completed is True
