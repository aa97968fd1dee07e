"""Tests for the staging store and the apply lock."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from installer_api.errors import InvalidPackageFormat, StagingError, UpdateInProgress
from installer_api.staging import PACKAGE_FILENAME, StagingStore, UpdateLock, normalize_upload_name


@pytest.mark.parametrize("filename", ["update.zip", "UPDATE.ZIP", "dir/sub/update.zip", r"C:\temp\update.zip"])
def test_normalize_upload_name_accepts_zip(filename: str) -> None:
    assert normalize_upload_name(filename).lower() == "update.zip"


def test_normalize_upload_name_rejects_missing_file() -> None:
    with pytest.raises(InvalidPackageFormat) as exc_info:
        normalize_upload_name("")
    assert exc_info.value.message == "You did not select a file to upload."


@pytest.mark.parametrize("filename", ["update.tar.gz", "update.txt", "update"])
def test_normalize_upload_name_rejects_other_extensions(filename: str) -> None:
    with pytest.raises(InvalidPackageFormat) as exc_info:
        normalize_upload_name(filename)
    assert exc_info.value.code == "updates.invalid_upload"
    assert exc_info.value.message == "Please upload a valid Zip file."


def test_stage_writes_package_into_attempt_directory(tmp_path: Path) -> None:
    store = StagingStore(tmp_path / "staging")
    handle = store.stage("update.zip", io.BytesIO(b"PK-content"))

    assert handle.root.parent == tmp_path / "staging"
    assert handle.root.name == handle.attempt_id
    assert handle.package_path == handle.root / PACKAGE_FILENAME
    assert handle.package_path.read_bytes() == b"PK-content"
    assert handle.bytes_written == len(b"PK-content")
    assert handle.original_filename == "update.zip"


def test_stage_rejects_extension_before_creating_anything(tmp_path: Path) -> None:
    store = StagingStore(tmp_path / "staging")
    with pytest.raises(InvalidPackageFormat):
        store.stage("update.rar", io.BytesIO(b"data"))
    assert not (tmp_path / "staging").exists()


def test_stage_enforces_size_limit_and_removes_partial_upload(tmp_path: Path) -> None:
    store = StagingStore(tmp_path / "staging", max_upload_bytes=4)
    with pytest.raises(StagingError) as exc_info:
        store.stage("update.zip", io.BytesIO(b"0123456789"))
    assert exc_info.value.code == "updates.upload_too_large"
    assert exc_info.value.status_code == 413
    assert list((tmp_path / "staging").iterdir()) == []


def test_stage_rejects_empty_upload(tmp_path: Path) -> None:
    store = StagingStore(tmp_path / "staging")
    with pytest.raises(InvalidPackageFormat):
        store.stage("update.zip", io.BytesIO(b""))
    assert list((tmp_path / "staging").iterdir()) == []


def test_staged_context_cleans_up_on_error(tmp_path: Path) -> None:
    store = StagingStore(tmp_path / "staging")
    with pytest.raises(RuntimeError):
        with store.staged("update.zip", io.BytesIO(b"data")) as handle:
            (handle.extract_dir / "nested").mkdir(parents=True)
            raise RuntimeError("boom")
    assert not handle.root.exists()


def test_staged_context_cleans_up_on_success(tmp_path: Path) -> None:
    store = StagingStore(tmp_path / "staging")
    with store.staged("update.zip", io.BytesIO(b"data")) as handle:
        assert handle.package_path.is_file()
    assert not handle.root.exists()


def test_update_lock_rejects_second_holder(tmp_path: Path) -> None:
    lock_path = tmp_path / "updates" / "update.lock"
    with UpdateLock(lock_path):
        with pytest.raises(UpdateInProgress) as exc_info:
            UpdateLock(lock_path).acquire()
    assert exc_info.value.code == "updates.locked"
    assert exc_info.value.status_code == 409


def test_update_lock_can_be_reacquired_after_release(tmp_path: Path) -> None:
    lock = UpdateLock(tmp_path / "update.lock")
    lock.acquire()
    lock.release()
    with UpdateLock(tmp_path / "update.lock"):
        pass
