"""Tests for the group folder manager and the shared worker pool."""

import asyncio
from typing import Dict

import pytest
import pytest_asyncio

from xynoxa_sync.models import GroupFolder
from xynoxa_sync.services.exceptions import ConfigError
from xynoxa_sync.sync.group_folder_manager import GroupFolderManager, WorkerPool

from conftest import FakeRemote, local_tree


@pytest.fixture
def remotes() -> Dict[str, FakeRemote]:
    return {}


@pytest_asyncio.fixture
async def manager(session_maker, sync_config, remotes):
    def remote_factory(folder: GroupFolder) -> FakeRemote:
        return remotes.setdefault(folder.name, FakeRemote())

    manager = GroupFolderManager(session_maker, sync_config, remote_factory)
    yield manager
    await manager.stop_all()


@pytest.mark.asyncio
async def test_add_folder_and_load(manager, config_home, session_maker, sync_config):
    folder = await manager.add_folder("Team", config_home / "Team")

    assert folder.enabled is True
    assert folder.local_root == str((config_home / "Team").resolve())
    assert set(manager.orchestrators) == {folder.id}

    fresh = GroupFolderManager(session_maker, sync_config, lambda f: FakeRemote())
    loaded = await fresh.load()
    assert [o.folder_id for o in loaded] == [folder.id]


@pytest.mark.asyncio
async def test_adding_same_root_twice_returns_same_folder(manager, config_home):
    first = await manager.add_folder("Team", config_home / "Team")
    second = await manager.add_folder("Team again", config_home / "Team")

    assert first.id == second.id
    assert len(await manager.list_folders()) == 1


@pytest.mark.asyncio
async def test_overlapping_roots_are_rejected(manager, config_home):
    await manager.add_folder("Team", config_home / "Team")

    with pytest.raises(ConfigError):
        await manager.add_folder("Nested", config_home / "Team" / "inner")
    with pytest.raises(ConfigError):
        await manager.add_folder("Parent", config_home)


@pytest.mark.asyncio
async def test_get_unknown_folder(manager):
    with pytest.raises(ConfigError):
        manager.get(999)


@pytest.mark.asyncio
async def test_disable_keeps_index_for_reconnect(manager, config_home, remotes):
    root = config_home / "Team"
    folder = await manager.add_folder("Team", root)
    (root / "a.txt").write_bytes(b"alpha")
    await manager.sync_all()
    assert remotes["Team"].tree() == {"a.txt": b"alpha"}

    await manager.disable(folder.id)
    assert folder.id not in manager.orchestrators
    assert [f.enabled for f in await manager.list_folders()] == [False]

    again = await manager.add_folder("Team", root)
    assert again.id == folder.id
    entries = await manager.get(folder.id).index.list_all()
    assert [e.path for e in entries] == ["a.txt"]

    # Nothing is uploaded again after reconnecting
    uploads = len(remotes["Team"].calls_to("upload"))
    await manager.sync_all(full_scan=True)
    assert len(remotes["Team"].calls_to("upload")) == uploads


@pytest.mark.asyncio
async def test_folders_sync_independently(manager, config_home, remotes):
    team = await manager.add_folder("Team", config_home / "Team")
    shared = await manager.add_folder("Shared", config_home / "Shared")
    (config_home / "Team" / "a.txt").write_bytes(b"team file")
    (config_home / "Shared" / "b.txt").write_bytes(b"shared file")
    remotes["Shared"].token_valid = False

    reports = await manager.sync_all()

    assert reports[team.id].new == {"a.txt"}
    assert "" in reports[shared.id].errors
    assert remotes["Team"].tree() == {"a.txt": b"team file"}
    assert manager.get(shared.id).state.requires_reauth is True
    assert manager.get(team.id).state.halted is False
    assert manager.requires_reauth is True

    remotes["Shared"].token_valid = True
    manager.resume_all()
    await manager.sync_all()
    assert remotes["Shared"].tree() == {"b.txt": b"shared file"}
    assert local_tree(config_home / "Team") == {"a.txt": b"team file"}


@pytest.mark.asyncio
async def test_states(manager, config_home):
    await manager.add_folder("Team", config_home / "Team")
    await manager.add_folder("Shared", config_home / "Shared")

    assert sorted(s.name for s in manager.states()) == ["Shared", "Team"]


@pytest.mark.asyncio
async def test_worker_pool_caps_concurrency():
    pool = WorkerPool(global_limit=3, default_folder_limit=2)
    active: Dict[int, int] = {1: 0, 2: 0}
    peak = {"global": 0, 1: 0, 2: 0}

    async def unit(folder_id: int, path: str):
        async with pool.slot(folder_id, path):
            active[folder_id] += 1
            peak[folder_id] = max(peak[folder_id], active[folder_id])
            peak["global"] = max(peak["global"], sum(active.values()))
            await asyncio.sleep(0.01)
            active[folder_id] -= 1

    await asyncio.gather(
        *(unit(folder_id, f"f{i}.txt") for folder_id in (1, 2) for i in range(10))
    )

    assert peak["global"] <= 3
    assert peak[1] <= 2
    assert peak[2] <= 2


@pytest.mark.asyncio
async def test_worker_pool_serializes_same_path():
    pool = WorkerPool(global_limit=8, default_folder_limit=8)
    inside = 0
    overlap = False

    async def unit(paths):
        nonlocal inside, overlap
        async with pool.slot(1, *paths):
            inside += 1
            overlap = overlap or inside > 1
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(unit(("a.txt",)), unit(("b.txt", "a.txt")), unit(("a.txt", "c.txt")))

    assert overlap is False
