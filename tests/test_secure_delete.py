from __future__ import annotations

import gc
import os
import time
import weakref

import pytest

from helpers import FakeOsFileOps, posix_only
from securestore.core.file_ops import secure_delete
from securestore.core.file_ops.secure_delete import CleanupQueue, SecureDeleter


@pytest.fixture
def deleter(context) -> SecureDeleter:
    return SecureDeleter(context)


def _make_file(directory, name: str, size: int) -> str:
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, name)
    with open(path, "wb") as f:
        f.write(b"\x42" * size)
    return path


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@posix_only
@pytest.mark.parametrize(
    ("size", "passes", "expected_byte"),
    [
        (256, None, 0xFF),  # default two passes
        (10, None, 0x00),  # below the minimum size: one pass
        (256, 10, 0x55),  # capped at three passes
    ],
)
def test_overwrite_patterns(deleter, data_root, tmp_path, size, passes, expected_byte) -> None:
    path = _make_file(data_root, "victim.bin", size)
    witness = tmp_path / "witness"
    os.link(path, witness)

    assert deleter.secure_delete(path, passes=passes)

    assert not os.path.exists(path)
    assert witness.read_bytes() == bytes([expected_byte]) * size


def test_missing_file_counts_as_deleted(deleter, data_root) -> None:
    assert deleter.secure_delete(os.path.join(data_root, "nothing"))
    assert deleter.quick_delete(os.path.join(data_root, "nothing"))


def test_outside_root_is_refused_unless_allowed(deleter, tmp_path) -> None:
    path = _make_file(tmp_path / "elsewhere", "keep.bin", 128)

    assert not deleter.secure_delete(path)
    assert os.path.exists(path)

    assert deleter.secure_delete(path, allow_outside_root=True)
    assert not os.path.exists(path)


@posix_only
def test_symlink_is_removed_without_touching_target(deleter, data_root, tmp_path) -> None:
    target = _make_file(tmp_path / "outside", "target.bin", 128)
    link = os.path.join(data_root, "link.bin")
    os.symlink(target, link)

    assert deleter.secure_delete(link)

    assert not os.path.lexists(link)
    with open(target, "rb") as f:
        assert f.read() == b"\x42" * 128


def test_quick_delete_refuses_directories(deleter, data_root) -> None:
    directory = os.path.join(data_root, "dir")
    os.mkdir(directory)

    assert not deleter.quick_delete(directory)
    assert os.path.isdir(directory)


def test_empty_file_is_simply_unlinked(deleter, data_root) -> None:
    path = _make_file(data_root, "empty.bin", 0)
    assert deleter.secure_delete(path)
    assert not os.path.exists(path)


def test_delete_on_close_fallback(deleter, data_root, os_ops) -> None:
    path = _make_file(data_root, "held.bin", 16)
    os_ops.fail_remove.add(path)
    os_ops.delete_on_close_result = True

    assert deleter.quick_delete(path)

    assert os_ops.delete_on_close_calls == [path]
    assert not deleter.queue.contains(path)
    assert not os.path.exists(path)


def test_failed_delete_is_queued_and_retried(deleter, data_root, os_ops) -> None:
    path = _make_file(data_root, "held.bin", 16)
    os_ops.fail_remove.add(path)

    assert not deleter.secure_delete(path)
    assert deleter.queue.contains(path)
    assert os.path.exists(path)

    os_ops.fail_remove.clear()
    assert _wait_for(lambda: len(deleter.queue) == 0)
    assert not os.path.exists(path)
    assert _wait_for(lambda: not deleter.queue.worker_active)


def test_process_pending_deletions_runs_synchronously(data_root, tmp_path) -> None:
    os_ops = FakeOsFileOps()
    queue = CleanupQueue(os_ops, initial_delay=60.0, register_atexit=False)
    path = _make_file(data_root, "held.bin", 16)
    os_ops.fail_remove.add(path)

    queue.enqueue(path)
    assert queue.process_pending() == 0
    assert queue.pending()[0].attempts == 1

    os_ops.fail_remove.clear()
    assert queue.process_pending() == 1
    assert len(queue) == 0
    queue.shutdown()


def test_worker_is_single_flight(data_root) -> None:
    os_ops = FakeOsFileOps()
    queue = CleanupQueue(os_ops, initial_delay=60.0, register_atexit=False)
    first = _make_file(data_root, "a.bin", 1)
    second = _make_file(data_root, "b.bin", 1)
    os_ops.fail_remove.update({first, second})

    queue.enqueue(first)
    worker = queue._worker
    queue.enqueue(second)
    queue.enqueue(second)

    assert queue.worker_active
    assert queue._worker is worker
    assert len(queue) == 2
    queue.shutdown(timeout=1.0)


def test_shutdown_makes_a_final_pass(data_root) -> None:
    os_ops = FakeOsFileOps()
    queue = CleanupQueue(os_ops, initial_delay=60.0, register_atexit=False)
    path = _make_file(data_root, "held.bin", 1)
    os_ops.fail_remove.add(path)
    queue.enqueue(path)

    os_ops.fail_remove.clear()
    queue.shutdown(timeout=1.0)

    assert len(queue) == 0
    assert not os.path.exists(path)
    assert not queue.worker_active


def test_vanished_file_leaves_the_queue(data_root) -> None:
    os_ops = FakeOsFileOps()
    queue = CleanupQueue(os_ops, initial_delay=60.0, register_atexit=False)
    path = _make_file(data_root, "gone.bin", 1)
    queue.enqueue(path)
    os.remove(path)

    assert queue.process_pending() == 1
    assert len(queue) == 0
    queue.shutdown()


def test_exit_registration_does_not_keep_queues_alive() -> None:
    queue = CleanupQueue(FakeOsFileOps(), initial_delay=60.0)
    assert queue in secure_delete._LIVE_QUEUES

    ref = weakref.ref(queue)
    del queue
    gc.collect()

    assert ref() is None


def test_shutdown_drops_exit_registration() -> None:
    queue = CleanupQueue(FakeOsFileOps(), initial_delay=60.0)

    queue.shutdown()

    assert queue not in secure_delete._LIVE_QUEUES
