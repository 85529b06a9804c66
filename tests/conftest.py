from __future__ import annotations

import pytest

from helpers import FakeOsFileOps
from securestore.core.config import StorageLimits
from securestore.core.context import StorageContext
from securestore.core.crypto.keys import generate_key
from securestore.core.storage import SecureFileStorage


@pytest.fixture
def limits() -> StorageLimits:
    # 20 GB / 16 GB / 1 GB / 50 MB / 50 MB scaled down
    return StorageLimits(
        max_content_size=4_000,
        max_encrypted_file_size=4_000,
        max_temp_directory_size=20_000,
        temp_cleanup_threshold=16_000,
        min_disk_space_required=1_000,
        lock_timeout_seconds=0.05,
        secure_delete_min_size=64,
        retry_initial_delay=0.01,
        retry_delay=0.02,
        retry_max_delay=0.05,
    )


@pytest.fixture
def os_ops() -> FakeOsFileOps:
    return FakeOsFileOps()


@pytest.fixture
def data_root(tmp_path) -> str:
    root = tmp_path / "Data"
    root.mkdir()
    return str(root)


@pytest.fixture
def context(data_root, limits, os_ops):
    ctx = StorageContext("alice", data_root, limits=limits, os_ops=os_ops)
    yield ctx
    ctx.shutdown()


@pytest.fixture
def storage(context) -> SecureFileStorage:
    return SecureFileStorage(context)


@pytest.fixture
def key() -> bytes:
    return bytes(generate_key())
