from __future__ import annotations

import threading
import time

import pytest

from securestore.core.errors import LockErrorKind
from securestore.core.file_ops.locking import FileLocker, LockRegistry
from securestore.core.file_ops.os_ops import PosixFileOps
from securestore.utils.validators import PathValidator


@pytest.fixture
def target(data_root):
    path = f"{data_root}/notes.enc"
    with open(path, "wb") as f:
        f.write(b"data")
    return PathValidator(PosixFileOps()).validate("notes.enc", data_root).value


@pytest.fixture
def locker() -> FileLocker:
    return FileLocker(LockRegistry())


def test_second_lock_fails_immediately_without_timeout(locker, target) -> None:
    first = locker.try_lock(target)
    assert first.ok

    second = locker.try_lock(target)
    assert not second.ok
    assert second.error.kind is LockErrorKind.ALREADY_LOCKED


def test_second_lock_times_out(locker, target) -> None:
    held = locker.try_lock(target).value

    start = time.monotonic()
    second = locker.try_lock(target, timeout=0.05)

    assert second.error.kind is LockErrorKind.TIMEOUT
    assert time.monotonic() - start >= 0.05
    held.release()


def test_release_is_idempotent_and_allows_relock(locker, target) -> None:
    lock = locker.try_lock(target).value
    lock.release()
    lock.release()
    locker.unlock(lock)

    assert lock.released
    assert not locker.is_locked(target)
    assert locker.try_lock(target).ok


def test_context_manager_releases(locker, target) -> None:
    with locker.try_lock(target).value as lock:
        assert lock.registered
        assert locker.is_locked(target)
    assert not locker.is_locked(target)


def test_stale_release_does_not_drop_new_holder(locker, target) -> None:
    first = locker.try_lock(target).value
    first.release()
    second = locker.try_lock(target).value

    first.release()
    assert locker.is_locked(target)
    second.release()


def test_missing_target_locks_trivially(locker, data_root) -> None:
    missing = PathValidator(PosixFileOps()).validate("absent.enc", data_root).value

    first = locker.try_lock(missing)
    second = locker.try_lock(missing)

    assert first.ok and second.ok
    assert not first.value.registered
    assert not locker.is_locked(missing)


def test_waiter_acquires_after_holder_releases(locker, target) -> None:
    held = locker.try_lock(target).value
    releaser = threading.Timer(0.05, held.release)
    releaser.start()
    try:
        result = locker.try_lock(target, timeout=2.0)
    finally:
        releaser.join()

    assert result.ok
    result.value.release()


def test_registry_is_shared_between_lockers(target) -> None:
    registry = LockRegistry()
    held = FileLocker(registry).try_lock(target).value

    assert not FileLocker(registry).try_lock(target).ok
    assert FileLocker(LockRegistry()).try_lock(target).ok
    held.release()
    assert len(registry) == 0
