from __future__ import annotations

import os
import re

import pytest

from securestore import SecureConfig, SecureFileStorage, StorageContext
from securestore.core.config import PathConfig
from securestore.core.crypto.file_cipher import FileType
from securestore.core.errors import (
    PathError,
    PathErrorKind,
    ProcessingErrorKind,
    ReadErrorKind,
)
from securestore.utils.validators import ValidationError


class MagicValidator:
    """Accepts files whose first bytes are the SecureStore magic."""

    def __init__(self) -> None:
        self.calls = []

    def validate(self, path: str, file_type: FileType) -> bool:
        self.calls.append(file_type)
        with open(path, "rb") as f:
            return f.read(4) == b"SSEF"


class TestText:
    def test_text_round_trip(self, storage, key) -> None:
        storage.write_encrypted_text("alice/diary.enc", key, "Grüße\nline two").unwrap()
        assert storage.read_encrypted_text("alice/diary.enc", key).unwrap() == "Grüße\nline two"

    def test_invalid_utf8_is_an_io_error(self, storage, key) -> None:
        storage.write_encrypted("alice/blob.enc", key, b"\xff\xfe\xfd").unwrap()
        result = storage.read_encrypted_text("alice/blob.enc", key)
        assert result.error.kind is ReadErrorKind.IO_ERROR
        assert isinstance(result.error.cause, UnicodeDecodeError)

    def test_lines_round_trip(self, storage, key) -> None:
        lines = ["buy milk", "", "call bob"]
        storage.write_encrypted_lines("alice/tasks.enc", key, lines).unwrap()
        assert storage.read_encrypted_lines("alice/tasks.enc", key).unwrap() == lines

    def test_empty_lines_file(self, storage, key) -> None:
        storage.write_encrypted_lines("alice/tasks.enc", key, []).unwrap()
        assert storage.read_encrypted_lines("alice/tasks.enc", key).unwrap() == []

    def test_missing_lines_file(self, storage, key) -> None:
        assert storage.read_encrypted_lines("alice/none.enc", key).error.kind is ReadErrorKind.NOT_FOUND


class TestProcessing:
    def test_transform_is_written_back(self, storage, key) -> None:
        storage.write_encrypted_text("alice/notes.enc", key, "draft").unwrap()

        assert storage.process_encrypted_file("alice/notes.enc", key, lambda text: text + " v2").ok
        assert storage.read_encrypted_text("alice/notes.enc", key).unwrap() == "draft v2"

    @pytest.mark.parametrize("outcome", [None, False])
    def test_abort_keeps_content(self, storage, key, outcome) -> None:
        storage.write_encrypted_text("alice/notes.enc", key, "draft").unwrap()

        result = storage.process_encrypted_file("alice/notes.enc", key, lambda text: outcome)

        assert result.error.kind is ProcessingErrorKind.ABORTED
        assert storage.read_encrypted_text("alice/notes.enc", key).unwrap() == "draft"

    def test_raising_transform(self, storage, key) -> None:
        storage.write_encrypted_text("alice/notes.enc", key, "draft").unwrap()

        def transform(text):
            raise ValueError("bad edit")

        result = storage.process_encrypted_file("alice/notes.enc", key, transform)

        assert result.error.kind is ProcessingErrorKind.CALLBACK_FAILED
        assert isinstance(result.error.cause, ValueError)
        assert storage.read_encrypted_text("alice/notes.enc", key).unwrap() == "draft"

    def test_transform_of_missing_file(self, storage, key) -> None:
        result = storage.process_encrypted_file("alice/none.enc", key, str.upper)
        assert result.error.kind is ReadErrorKind.NOT_FOUND


class TestSearch:
    def test_all_matches_in_order(self, storage, key) -> None:
        storage.write_encrypted_text("alice/log.enc", key, "id=12 ok, id=7 fail, id=300 ok").unwrap()

        assert storage.search_encrypted_file("alice/log.enc", key, r"id=\d+").unwrap() == ["id=12", "id=7", "id=300"]
        assert storage.search_encrypted_file("alice/log.enc", key, re.compile(r"ok|fail")).unwrap() == ["ok", "fail", "ok"]
        assert storage.search_encrypted_file("alice/log.enc", key, "absent").unwrap() == []

    def test_invalid_pattern(self, storage, key) -> None:
        storage.write_encrypted_text("alice/log.enc", key, "x").unwrap()
        result = storage.search_encrypted_file("alice/log.enc", key, "(unclosed")
        assert result.error.kind is ProcessingErrorKind.INVALID_PATTERN


class TestValidateFilePath:
    @pytest.mark.parametrize("file_type", [FileType.PASSWORD, FileType.TASK_LIST])
    def test_missing_optional_files_are_valid(self, storage, file_type) -> None:
        assert storage.validate_file_path("alice/passwords.enc", file_type).ok

    @pytest.mark.parametrize("file_type", [FileType.GENERIC, FileType.DIARY])
    def test_missing_required_files_are_not_found(self, storage, file_type) -> None:
        result = storage.validate_file_path("alice/diary.enc", file_type)
        assert result.error.kind is ReadErrorKind.NOT_FOUND

    def test_type_validator_is_consulted(self, context, key) -> None:
        checker = MagicValidator()
        storage = SecureFileStorage(context, type_validator=checker)
        storage.write_encrypted("alice/diary.enc", key, b"x").unwrap()
        os.makedirs(context.user_dir, exist_ok=True)
        with open(os.path.join(context.user_dir, "plain.txt"), "w") as f:
            f.write("not encrypted")

        assert storage.validate_file_path("alice/diary.enc", FileType.DIARY).ok
        mismatch = storage.validate_file_path("alice/plain.txt", FileType.DIARY)
        assert mismatch.error.kind is ProcessingErrorKind.TYPE_MISMATCH
        assert checker.calls == [FileType.DIARY, FileType.DIARY]

    def test_bad_path(self, storage) -> None:
        result = storage.validate_file_path("../x", FileType.PASSWORD)
        assert isinstance(result.error, PathError)
        assert result.error.kind is PathErrorKind.TRAVERSAL


class TestDirectories:
    def test_hierarchy_under_user_dir(self, storage, context) -> None:
        result = storage.create_hierarchical_directory(["Diary", "2024", "01"])

        assert result.ok
        assert result.value.path == os.path.join(os.path.realpath(context.user_dir), "Diary", "2024", "01")
        assert os.path.isdir(result.value.path)

    def test_hierarchy_under_explicit_base(self, storage, data_root) -> None:
        result = storage.create_hierarchical_directory(["2024"], base="alice/Tasks")
        assert result.value.relative == os.path.join("alice", "Tasks", "2024")

    @pytest.mark.parametrize("components", [[], ["Diary", ".."], ["a/b"], ["CON"]])
    def test_bad_components(self, storage, components) -> None:
        result = storage.create_hierarchical_directory(components)
        assert result.error.kind is PathErrorKind.MALFORMED

    def test_ensure_directory_refuses_file(self, storage, context) -> None:
        os.makedirs(context.user_dir)
        with open(os.path.join(context.user_dir, "file"), "w") as f:
            f.write("x")
        assert not storage.ensure_directory("alice/file").ok


class TestDeleteAndClean:
    def _entry(self, storage, key) -> str:
        storage.create_hierarchical_directory(["Diary", "2024", "01"]).unwrap()
        path = "alice/Diary/2024/01/15.enc"
        storage.write_encrypted_text(path, key, "entry").unwrap()
        return path

    def test_empty_levels_are_removed(self, storage, context, key) -> None:
        path = self._entry(storage, key)

        assert storage.delete_file_and_clean_empty_dirs(path, ["Diary", "2024", "01"]).unwrap() is True

        assert not os.path.exists(os.path.join(context.user_dir, "Diary"))
        assert os.path.isdir(context.user_dir)

    def test_stops_at_first_non_empty_level(self, storage, context, key) -> None:
        path = self._entry(storage, key)
        storage.write_encrypted_text("alice/Diary/2024/02.enc", key, "other").unwrap()

        assert storage.delete_file_and_clean_empty_dirs(path, ["Diary", "2024", "01"]).unwrap()

        assert not os.path.exists(os.path.join(context.user_dir, "Diary", "2024", "01"))
        assert os.path.isdir(os.path.join(context.user_dir, "Diary", "2024"))

    def test_missing_file(self, storage) -> None:
        result = storage.delete_file_and_clean_empty_dirs("alice/none.enc", ["Diary"])
        assert result.error.kind is ReadErrorKind.NOT_FOUND

    def test_deferred_deletion_keeps_directories(self, storage, context, key, os_ops) -> None:
        path = self._entry(storage, key)
        validated = storage.validate(path).unwrap()
        os_ops.fail_remove.add(validated.path)

        assert storage.delete_file_and_clean_empty_dirs(path, ["Diary", "2024", "01"]).unwrap() is False

        assert os.path.isdir(os.path.join(context.user_dir, "Diary", "2024", "01"))
        assert context.cleanup_queue.contains(validated.path)
        os_ops.fail_remove.clear()
        storage.process_pending_deletions()
        assert not os.path.exists(validated.path)


class TestContext:
    @pytest.mark.parametrize("user", ["", "..", "a/b", "CON", "bob\x00"])
    def test_unsafe_user_names(self, data_root, user) -> None:
        with pytest.raises(ValidationError):
            StorageContext(user, data_root)

    def test_layout(self, context, data_root) -> None:
        assert context.user_dir == os.path.join(data_root, "alice")
        assert context.temp_dir == os.path.join(data_root, "alice", "Temp")
        assert context.temp_dir_for("bob") == os.path.join(data_root, "bob", "Temp")
        with pytest.raises(ValidationError):
            context.temp_dir_for("..")

    def test_from_config(self, tmp_path, limits) -> None:
        config = SecureConfig(paths=PathConfig(data_dir=tmp_path / "Data", log_dir=tmp_path / "logs"), limits=limits)
        context = StorageContext.from_config("bob", config)
        try:
            assert context.data_root == str(tmp_path / "Data")
            assert context.limits is limits
        finally:
            context.shutdown()

    def test_storage_context_manager_shuts_down(self, data_root, limits, os_ops) -> None:
        with SecureFileStorage(StorageContext("carol", data_root, limits=limits, os_ops=os_ops)) as storage:
            queue = storage.context.cleanup_queue
        assert not queue.worker_active

    def test_contexts_share_locks_only_when_asked(self, data_root, limits, key, os_ops) -> None:
        first = StorageContext("alice", data_root, limits=limits, os_ops=os_ops)
        second = StorageContext("alice", data_root, limits=limits, os_ops=os_ops, lock_registry=first.lock_registry)
        try:
            storage_a, storage_b = SecureFileStorage(first), SecureFileStorage(second)
            storage_a.write_encrypted("alice/x.enc", key, b"1").unwrap()
            with storage_a.locker.try_lock(storage_a.validate("alice/x.enc").unwrap()).unwrap():
                assert storage_b.read_encrypted("alice/x.enc", key).error.kind is ReadErrorKind.LOCKED
        finally:
            first.shutdown()
            second.shutdown()
