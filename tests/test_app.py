"""Tests for the application context and the CLI entry point."""

import pytest

import main
from cloudunify import CloudUnify, create_app
from cloudunify.config import AppConfig, DropboxConfig
from cloudunify.manager import StorageManager
from storage import AzureBlobDriver, DropboxDriver, GDriveDriver, OneDriveDriver
from storage.credentials import MemoryCredentialStore

from conftest import FakeDriver, make_file, run


@pytest.fixture
def app():
    drivers = {
        "google": FakeDriver("google", total=1000, used=200,
                             files=[make_file("google", "g1", "budget.xlsx", day=3)]),
        "dropbox": FakeDriver("dropbox", total=500, used=100, stored=False),
    }
    return CloudUnify(AppConfig(), MemoryCredentialStore(), StorageManager(drivers))


class TestCreateApp:

    def test_registry_in_display_order(self):
        app = create_app(AppConfig(), MemoryCredentialStore())
        drivers = app.manager.drivers
        assert list(drivers) == ["google", "onedrive", "azure", "dropbox"]
        assert isinstance(drivers["google"], GDriveDriver)
        assert isinstance(drivers["onedrive"], OneDriveDriver)
        assert isinstance(drivers["azure"], AzureBlobDriver)
        assert isinstance(drivers["dropbox"], DropboxDriver)

    def test_drivers_share_store_and_download_dir(self):
        store = MemoryCredentialStore()
        config = AppConfig(dropbox=DropboxConfig(app_key="k"), download_dir="/tmp/cu")
        app = create_app(config, store)
        for driver in app.manager.drivers.values():
            assert driver.store is store
            assert driver.download_dir == "/tmp/cu"

    def test_start_with_nothing_configured(self):
        app = create_app(AppConfig(), MemoryCredentialStore())
        run(app.start())
        assert app.manager.get_best_provider_for_upload() is None
        assert app.manager.files == []

    def test_start_loads_files(self, app):
        run(app.start())
        assert [f.id for f in app.manager.files] == ["g1"]


class TestCli:

    def test_has_action(self):
        assert not main.has_action(main.parse_args([]))
        assert not main.has_action(main.parse_args(["--cli"]))
        assert main.has_action(main.parse_args(["--search", ""]))
        assert main.has_action(main.parse_args(["--download", "google", "id", "a.txt"]))

    def test_status(self, app, capsys):
        assert run(main.run_cli(app, main.parse_args(["--status"]))) == 0
        out = capsys.readouterr().out
        assert "Google Drive" in out
        assert "disconnected" in out
        assert "Uploads go to google" in out

    def test_list(self, app, capsys):
        assert run(main.run_cli(app, main.parse_args(["--list"]))) == 0
        assert "budget.xlsx" in capsys.readouterr().out

    def test_search(self, app, capsys):
        assert run(main.run_cli(app, main.parse_args(["--search", "BUDGET"]))) == 0
        assert "budget.xlsx" in capsys.readouterr().out

    def test_unknown_provider_exit_code(self, app, capsys):
        assert run(main.run_cli(app, main.parse_args(["--connect", "box"]))) == 1
        assert "provider_not_found" in capsys.readouterr().out

    def test_upload_missing_file(self, app, capsys, tmp_path):
        args = main.parse_args(["--upload", str(tmp_path / "nope.txt")])
        assert run(main.run_cli(app, args)) == 1

    def test_upload_too_large_for_auto_target(self, app, capsys, tmp_path):
        path = tmp_path / "big.bin"
        path.write_bytes(b"x" * 900)
        args = main.parse_args(["--upload", str(path)])
        assert run(main.run_cli(app, args)) == 1
        assert "insufficient_quota" in capsys.readouterr().out

    def test_bad_config_file(self, tmp_path, capsys):
        assert main.main(["--config", str(tmp_path / "missing.json"), "--status"]) == 2
        assert "Config file not found" in capsys.readouterr().out
