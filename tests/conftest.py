"""Pytest configuration for the bulk operations helper."""
import pytest

from bulkops.base.config import (
    BulkOpsConfig,
    CaptureConfig,
    ExecutorConfig,
    LogConfig,
    StorageConfig,
    set_config,
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    # Keep state and logs out of the real home directory.
    monkeypatch.setenv("BULKOPS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("BULKOPS_LOG_FILE", "false")
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def fast_config(tmp_path):
    """Config with no real waiting between batches or retries."""
    return BulkOpsConfig(
        capture=CaptureConfig(),
        executor=ExecutorConfig(inter_batch_delay_ms=0, backoff_base_ms=0),
        storage=StorageConfig(base_dir=tmp_path / "state"),
        log=LogConfig(file_enabled=False),
    )
