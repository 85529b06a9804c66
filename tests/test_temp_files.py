from __future__ import annotations

import gc
import logging
import os
import re
import stat

import pytest

from helpers import posix_only, temp_files_left
from securestore.core.errors import TempFileErrorKind
from securestore.core.file_ops.temp_files import ScopeGuard


@pytest.fixture
def temp_files(storage):
    return storage.temp_files


def test_create_makes_an_empty_private_file(temp_files, context) -> None:
    result = temp_files.create(estimated_bytes=100)
    assert result.ok

    with result.value as handle:
        path = handle.path.path
        assert os.path.dirname(path) == os.path.realpath(context.temp_dir)
        assert re.fullmatch(r"alice_[0-9a-f]{16}\.tmp", handle.path.name)
        assert os.path.getsize(path) == 0
        assert context.is_active_temp(path)

    assert not os.path.exists(path)
    assert not context.is_active_temp(path)
    assert temp_files_left(context) == []


@posix_only
def test_permissions_are_owner_only(temp_files, context) -> None:
    with temp_files.create(estimated_bytes=100).value as handle:
        assert stat.S_IMODE(os.stat(handle.path.path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(context.temp_dir).st_mode) == 0o700
        assert stat.S_IMODE(os.stat(context.user_dir).st_mode) == 0o700


def test_names_are_unique(temp_files) -> None:
    handles = [temp_files.create(estimated_bytes=10).value for _ in range(5)]
    try:
        assert len({h.path.path for h in handles}) == 5
    finally:
        for handle in handles:
            handle.cleanup()


@pytest.mark.parametrize(
    ("hint", "prefix"),
    [
        ("../../etc/pass wd.enc", "pass_wd"),
        ("Diary/2024-01.enc", "2024-01"),
        ("...", "alice"),
        (None, "alice"),
    ],
)
def test_template_hint_is_sanitized(temp_files, hint, prefix) -> None:
    with temp_files.create(template_hint=hint, estimated_bytes=10).value as handle:
        assert re.fullmatch(rf"{re.escape(prefix)}_[0-9a-f]{{16}}\.tmp", handle.path.name)


def test_disarmed_file_survives_cleanup(temp_files) -> None:
    handle = temp_files.create(estimated_bytes=10).value
    path = handle.disarm()
    handle.cleanup()

    assert os.path.exists(path.path)
    os.remove(path.path)


def test_cleanup_runs_once(temp_files, context) -> None:
    handle = temp_files.create(estimated_bytes=10).value
    handle.cleanup()
    handle.cleanup()

    assert not handle.armed
    assert temp_files_left(context) == []


def test_permission_mismatch_is_fatal(temp_files, context, os_ops) -> None:
    os_ops.fail_verify_suffix = ".tmp"

    result = temp_files.create(estimated_bytes=10)

    assert not result.ok
    assert result.error.kind is TempFileErrorKind.PERMISSION_ERROR
    assert temp_files_left(context) == []
    assert context.active_temp_files() == frozenset()


def test_quota_failure_creates_nothing(temp_files, context, os_ops) -> None:
    os_ops.free_space = 0

    assert not temp_files.create(estimated_bytes=10).ok
    assert temp_files_left(context) == []


def test_prechecked_create_skips_the_quota_scan(temp_files, context, os_ops) -> None:
    os_ops.free_space = 0

    with temp_files.create(estimated_bytes=10, quota_checked=True).value as handle:
        assert os.path.exists(handle.path.path)

    assert temp_files_left(context) == []


def test_collected_handle_still_deletes(temp_files, context, caplog) -> None:
    handle = temp_files.create(estimated_bytes=10).value
    path = handle.path.path

    with caplog.at_level(logging.WARNING, logger="securestore.temp"):
        del handle
        gc.collect()

    assert not os.path.exists(path)
    assert "collected without cleanup" in caplog.text


def test_startup_cleanup_sweeps_every_user(temp_files, context, data_root) -> None:
    live = temp_files.create(estimated_bytes=10).value
    leftovers = []
    for user in ("alice", "bob"):
        nested = os.path.join(data_root, user, "Temp", "nested")
        os.makedirs(nested, exist_ok=True)
        for directory in (os.path.dirname(nested), nested):
            path = os.path.join(directory, "stale.tmp")
            with open(path, "wb") as f:
                f.write(b"plaintext")
            leftovers.append(path)
    with open(os.path.join(data_root, "alice", "notes.enc"), "wb") as f:
        f.write(b"keep")

    removed = temp_files.cleanup_all_user_temp_folders()

    assert removed == 4
    assert not any(os.path.exists(p) for p in leftovers)
    assert not os.path.exists(os.path.join(data_root, "bob", "Temp", "nested"))
    assert os.path.exists(live.path.path)
    assert os.path.exists(os.path.join(data_root, "alice", "notes.enc"))
    live.cleanup()


def test_scope_guard() -> None:
    calls = []
    with ScopeGuard(lambda: calls.append("fired")):
        pass
    with ScopeGuard(lambda: calls.append("never")) as guard:
        guard.disarm()

    assert calls == ["fired"]
