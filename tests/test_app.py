"""Test application wiring and the command line"""

import pytest
from collections import namedtuple
from unittest import mock

from habitsync.app import build_app, create_store
from habitsync.config import AppConfig, RemoteConfig, StorageConfig, SyncConfig
from habitsync.errors import AuthError
from habitsync.remote.file_store import FileObjectStore
from main import main

IfStats = namedtuple('IfStats', ['isup'])


def app_config(data_dir, remote_dir, **remote):
    return AppConfig(
        sync=SyncConfig(retry_delay=0, debounce_delay=0.05),
        remote=RemoteConfig(directory=str(remote_dir), **remote),
        storage=StorageConfig(data_dir=str(data_dir), keys_dir=str(data_dir / "keys"))
    )


class TestBuildApp:
    """Test collaborators are wired together"""

    def test_create_store(self, remote_dir):
        """Test backend selection"""
        assert isinstance(create_store(RemoteConfig(directory=str(remote_dir))), FileObjectStore)
        assert create_store(RemoteConfig(backend="github", owner="o", repo="r")) is None

        with pytest.raises(ValueError):
            create_store(RemoteConfig(backend="ftp"))
        with pytest.raises(ValueError):
            create_store(RemoteConfig(backend="github"))

    @pytest.mark.asyncio
    async def test_local_change_arms_debounce(self, temp_dir, remote_dir):
        """Test dataset mutations reach the scheduler"""
        app = build_app(app_config(temp_dir, remote_dir), probe=lambda: True)
        await app.start(background=False)

        app.local.add_record("Read")

        assert app.scheduler.state.pending_changes is True
        assert app.scheduler.debounce_armed
        await app.close()

    @pytest.mark.asyncio
    async def test_two_devices(self, temp_dir, remote_dir):
        """Test records travel between two devices through the remote"""
        first = build_app(app_config(temp_dir / "a", remote_dir), probe=lambda: True)
        second = build_app(app_config(temp_dir / "b", remote_dir), probe=lambda: True)
        await first.start(background=False)
        await second.start(background=False)

        record = first.local.add_record("Read 📚")
        await first.scheduler.manual_sync()
        await second.scheduler.manual_sync()

        assert second.local.load().get(record.id).text == "Read 📚"
        assert first.identity != second.identity
        await first.close()
        await second.close()

    @pytest.mark.asyncio
    async def test_data_is_encrypted_at_rest(self, temp_dir, remote_dir):
        """Test the local dataset file does not contain plaintext"""
        app = build_app(app_config(temp_dir, remote_dir), probe=lambda: True)
        app.local.add_record("secret habit")

        raw = app.blobs.get_blob(app.local.blob_key)
        assert b"secret habit" not in raw
        await app.close()

    @pytest.mark.asyncio
    async def test_offline_start(self, temp_dir, remote_dir):
        """Test an offline start leaves the scheduler offline"""
        app = build_app(app_config(temp_dir, remote_dir), probe=lambda: False)
        await app.start(background=False)

        assert not app.scheduler.is_online
        await app.close()

    @pytest.mark.asyncio
    async def test_github_without_token(self, temp_dir, remote_dir):
        """Test a missing token disables syncing but not local use"""
        config = app_config(temp_dir, remote_dir, backend="github", owner="o", repo="r")
        app = build_app(config, probe=lambda: True)
        await app.start(background=False)

        assert not app.is_authenticated()
        app.local.add_record("Still works offline")
        with pytest.raises(AuthError):
            await app.scheduler.manual_sync()
        await app.close()


class TestCommandLine:
    """Test the main entry point"""

    @pytest.fixture(autouse=True)
    def network_up(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        with mock.patch('psutil.net_if_stats', return_value={'eth0': IfStats(True)}):
            yield

    @pytest.mark.asyncio
    async def test_add_sync_list(self, temp_dir, remote_dir, capsys):
        """Test a record added on one device is listed on another"""
        one = ['--data-dir', str(temp_dir / "one"), '--remote-dir', str(remote_dir)]
        two = ['--data-dir', str(temp_dir / "two"), '--remote-dir', str(remote_dir)]

        assert await main(one + ['add', 'Drink water']) == 0
        assert await main(one + ['sync']) == 0
        assert await main(two + ['sync']) == 0
        capsys.readouterr()

        assert await main(two + ['list']) == 0
        assert "Drink water" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unknown_record(self, temp_dir, remote_dir):
        """Test editing a missing id fails cleanly"""
        args = ['--data-dir', str(temp_dir / "one"), '--remote-dir', str(remote_dir)]
        assert await main(args + ['done', 'nope']) == 1

    @pytest.mark.asyncio
    async def test_status(self, temp_dir, remote_dir, capsys):
        """Test the status report"""
        args = ['--data-dir', str(temp_dir / "one"), '--remote-dir', str(remote_dir)]
        assert await main(args + ['status']) == 0
        assert "Status:" in capsys.readouterr().out
