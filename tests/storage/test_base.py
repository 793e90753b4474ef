"""Tests for the data model and the StorageDriver contract.

Uses the in-memory FakeDriver from conftest, so no network is needed.
"""

import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from storage.base import (
    EPOCH,
    ConfigurationError,
    ErrorKind,
    OperationResult,
    ProgressReporter,
    Quota,
    StorageError,
    UploadSource,
    parse_timestamp,
    unique_destination,
)

from conftest import FakeDriver, ProgressRecorder, connected, make_file, run


class TestQuota:

    def test_from_usage_accepts_strings(self):
        assert Quota.from_usage("1000", "250") == Quota(1000, 250, 750)

    def test_from_usage_missing_values(self):
        assert Quota.from_usage(None, None) == Quota()

    def test_from_usage_clamps(self):
        assert Quota.from_usage(100, 150) == Quota(100, 100, 0)
        assert Quota.from_usage(-5, -1) == Quota()

    def test_inconsistent_quota_rejected(self):
        with pytest.raises(ValueError):
            Quota(total=10, used=2, free=3)


class TestParseTimestamp:

    def test_zulu_string(self):
        assert parse_timestamp("2024-03-01T10:00:00.000Z") == \
            datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def test_seven_fraction_digits(self):
        parsed = parse_timestamp("2024-03-01T10:00:00.1234567Z")
        assert parsed == datetime(2024, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        assert parse_timestamp(datetime(2024, 3, 1)).tzinfo == timezone.utc

    def test_offset_converted_to_utc(self):
        local = datetime(2024, 3, 1, 12, tzinfo=timezone(timedelta(hours=2)))
        assert parse_timestamp(local) == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12345])
    def test_unusable_values_map_to_epoch(self, value):
        assert parse_timestamp(value) == EPOCH


class TestUniqueDestination:

    def test_free_name_used_as_is(self, tmp_path):
        assert unique_destination(str(tmp_path), "a.txt") == str(tmp_path / "a.txt")

    def test_collisions_get_counter(self, tmp_path):
        (tmp_path / "a.txt").write_text("1")
        (tmp_path / "a (1).txt").write_text("2")
        assert unique_destination(str(tmp_path), "a.txt") == str(tmp_path / "a (2).txt")

    def test_path_components_stripped(self, tmp_path):
        assert unique_destination(str(tmp_path), "../../etc/passwd") == \
            str(tmp_path / "passwd")


class TestProgressReporter:

    def test_clamped_and_monotonic(self):
        recorder = ProgressRecorder()
        progress = ProgressReporter(recorder)
        for value in (-10, 30, 20, 150):
            progress(value)
        progress.close(wait=True)
        assert recorder.values == [0.0, 30.0, 100.0]

    def test_failing_callback_is_ignored(self):
        def explode(_):
            raise RuntimeError("ui gone")
        progress = ProgressReporter(explode)
        progress(10)
        progress.close(wait=True)

    def test_bytes_sent(self):
        recorder = ProgressRecorder()
        progress = ProgressReporter(recorder)
        progress.bytes_sent(25, 100)
        progress.close(wait=True)
        assert recorder.values == [25.0]

    def test_reports_after_close_are_dropped(self):
        recorder = ProgressRecorder()
        progress = ProgressReporter(recorder)
        progress.close(wait=True)
        progress(40)
        assert recorder.values == []

    def test_slow_callback_does_not_block_reporting(self):
        recorder = ProgressRecorder(delay=0.5)
        progress = ProgressReporter(recorder)
        started = time.monotonic()
        progress(10)
        progress.done()
        assert time.monotonic() - started < 0.25
        assert recorder.wait() == [10.0, 100.0]

    def test_no_callback(self):
        ProgressReporter().done()


class TestOperationResult:

    def test_truthiness(self):
        assert OperationResult.ok("fine")
        failure = OperationResult.failure(ErrorKind.REMOTE_CALL_FAILED, "nope")
        assert not failure
        assert failure.error == ErrorKind.REMOTE_CALL_FAILED


class TestUploadSource:

    def test_from_path(self, tmp_path):
        path = tmp_path / "photo.png"
        path.write_bytes(b"12345")
        source = UploadSource.from_path(str(path))
        assert (source.name, source.size, source.mime_type) == ("photo.png", 5, "image/png")


class TestInit:

    def test_missing_configuration_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            run(FakeDriver(configured=False).init())
        assert exc_info.value.kind == ErrorKind.CONFIGURATION_MISSING

    def test_restores_session_and_quota(self):
        driver = connected(FakeDriver(total=100, used=40))
        assert driver.get_quota() == Quota(100, 40, 60)

    def test_idempotent(self):
        driver = connected(FakeDriver())
        run(driver.init())
        assert driver.is_connected

    def test_rejected_credential_is_forgotten(self, auth_error):
        driver = FakeDriver()
        driver.restore_error = auth_error
        run(driver.init())
        assert driver.is_initialized and not driver.is_connected
        assert driver.forget_calls == 1

    def test_transient_restore_failure_keeps_credential(self):
        driver = FakeDriver()
        driver.restore_error = ConnectionError("offline")
        run(driver.init())
        assert not driver.is_connected
        assert driver.forget_calls == 0


class TestConnect:

    def test_requires_init(self):
        result = run(FakeDriver().connect())
        assert result.error == ErrorKind.CONFIGURATION_MISSING

    def test_failure_is_reported(self):
        driver = FakeDriver(stored=False)
        driver.authorize_error = StorageError("user cancelled")

        async def scenario():
            await driver.init()
            return await driver.connect()

        result = run(scenario())
        assert result.error == ErrorKind.REMOTE_CALL_FAILED
        assert "user cancelled" in result.message
        assert not driver.is_connected

    def test_credential_rejected_by_quota_call(self, auth_error):
        driver = FakeDriver(stored=False, total=100)
        driver.quota_error = auth_error

        async def scenario():
            await driver.init()
            return await driver.connect()

        result = run(scenario())
        assert not result
        assert result.error == ErrorKind.REMOTE_CALL_FAILED
        assert not driver.is_connected
        assert driver.forget_calls == 1

    def test_already_connected_is_a_no_op(self):
        driver = connected(FakeDriver())
        assert run(driver.connect())
        assert driver.authorize_calls == 0


class TestDisconnected:

    @pytest.fixture
    def driver(self):
        driver = FakeDriver(stored=False, files=[make_file("google", "1", "a.txt")],
                            total=100)
        run(driver.init())
        return driver

    def test_listing_and_search_empty(self, driver):
        assert run(driver.list_files()) == []
        assert run(driver.search_files("a")) == []

    def test_quota_zeroed(self, driver):
        run(driver.update_quota())
        assert driver.get_quota() == Quota()

    def test_upload_and_download_refused(self, driver, upload_source):
        assert run(driver.upload_file(upload_source())).error == \
            ErrorKind.PROVIDER_NOT_CONNECTED
        assert run(driver.download_file("1", "a.txt")).error == \
            ErrorKind.PROVIDER_NOT_CONNECTED


class TestOperations:

    def test_blank_search_skips_provider(self):
        driver = connected(FakeDriver(files=[make_file("google", "1", "a.txt")]))
        driver.search_error = AssertionError("should not be called")
        assert run(driver.search_files("  ")) == []

    def test_list_respects_max_results(self):
        files = [make_file("google", str(i), f"{i}.txt") for i in range(5)]
        driver = connected(FakeDriver(files=files))
        assert len(run(driver.list_files(max_results=2))) == 2

    def test_upload_too_large_refused_before_call(self, upload_source):
        driver = connected(FakeDriver())
        driver.MAX_UPLOAD_SIZE = 10
        result = run(driver.upload_file(upload_source(11)))
        assert result.error == ErrorKind.UNSUPPORTED_FILE_SIZE
        assert driver.uploads == []

    def test_upload_failure(self, upload_source):
        driver = connected(FakeDriver())
        driver.upload_error = StorageError("quota exceeded")
        result = run(driver.upload_file(upload_source()))
        assert result.error == ErrorKind.REMOTE_CALL_FAILED
        assert driver.is_connected

    def test_upload_auth_failure_disconnects(self, upload_source, auth_error):
        driver = connected(FakeDriver())
        driver.upload_error = auth_error
        assert not run(driver.upload_file(upload_source()))
        assert not driver.is_connected
        assert driver.get_quota() == Quota()

    def test_download_to_default_dir(self, tmp_path):
        driver = connected(FakeDriver(download_dir=str(tmp_path / "dl")))
        result = run(driver.download_file("1", "a.txt"))
        assert result.success
        with open(result.local_path, "rb") as f:
            assert f.read() == b"fake content"

    def test_download_collision_renamed(self, tmp_path):
        (tmp_path / "a.txt").write_text("existing")
        driver = connected(FakeDriver())
        result = run(driver.download_file("1", "a.txt", str(tmp_path)))
        assert os.path.basename(result.local_path) == "a (1).txt"
        assert (tmp_path / "a.txt").read_text() == "existing"

    def test_failed_download_removes_partial_file(self, tmp_path):
        driver = connected(FakeDriver())
        driver.download_error = ConnectionError("reset")
        result = run(driver.download_file("1", "a.txt", str(tmp_path)))
        assert result.error == ErrorKind.REMOTE_CALL_FAILED
        assert os.listdir(tmp_path) == []
