# ============================================================================
# bulkops/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# All tunable settings live here: what traffic counts as the target listing,
# how the proxy listens, how hard the executor pushes the remote API, and
# where state and logs are written.
#
# KEY CONCEPTS:
# 1. Dataclasses: frozen sections, one per concern
# 2. Environment Variables: every setting can be overridden (BULKOPS_*)
# 3. Singleton: one shared config via get_config(), swappable in tests
#
# ============================================================================

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_tuple(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# ============================================================================
# Traffic Capture Configuration
# ============================================================================
# Controls which requests the correlator treats as the target listing and
# how identifiers are pulled out of the listing response.

@dataclass(frozen=True)
class CaptureConfig:
    # Substring matched against request urls to spot the location search call
    target_pattern: str = "backend.leadconnectorhq.com/locations/search"

    # Ordered identifier fields for entries of the "locations" list.
    # The listing API has been seen returning both "_id" and "id"; only the
    # fields named here are consulted, first match wins per entry.
    id_fields: Tuple[str, ...] = ("_id",)

    # Hosts (suffix match) whose flows are forwarded to the correlator.
    # Empty tuple means every flow through the proxy is observed.
    capture_hosts: Tuple[str, ...] = ("leadconnectorhq.com", "gohighlevel.com")

    # Constant headers the web app always sends alongside the token
    fixed_headers: Tuple[Tuple[str, str], ...] = (("channel", "APP"), ("source", "WEB_USER"))


# ============================================================================
# Proxy Configuration
# ============================================================================

@dataclass(frozen=True)
class ProxyConfig:
    # 127.0.0.1 keeps the proxy reachable from this machine only
    listen_host: str = "127.0.0.1"

    # 8080 is the usual browser proxy port; 0 picks a free port
    listen_port: int = 8080


# ============================================================================
# Bulk Executor Configuration
# ============================================================================
# Batch size and inter-batch delay are deliberate backpressure: the remote
# API rate-limits aggressively when hit with dozens of parallel writes.

@dataclass(frozen=True)
class ExecutorConfig:
    batch_size: int = 5
    inter_batch_delay_ms: int = 1000

    # Attempts per target, including the first one
    max_attempts: int = 3

    # Backoff before retry n is backoff_base_ms * n
    backoff_base_ms: int = 2000

    # Per-request timeout in seconds
    request_timeout: float = 30.0

    # Refuse runs with credentials older than this. 0 disables the check.
    max_credential_age_s: float = 0.0

    # Extra message markers that reclassify a terminal failure as Skipped
    skip_markers: Tuple[str, ...] = ()


# ============================================================================
# File Storage Configuration
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    # Base directory for state and logs (~/.bulkops by default)
    base_dir: Path = field(default_factory=lambda: Path.home() / ".bulkops")

    # JSON document holding credentials, targets, template and recording flag
    state_file: str = "state.json"

    @property
    def state_path(self) -> Path:
        return self.base_dir / self.state_file


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = True
    file_name: str = "bulkops.log"
    max_file_size_mb: int = 5
    backup_count: int = 3


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass  # Not frozen because __post_init__ creates directories
class BulkOpsConfig:
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)

    # Debug mode: verbose logging and uvicorn reload
    debug: bool = False

    # Where the HTTP control surface listens
    api_host: str = "127.0.0.1"
    api_port: int = 8766

    def __post_init__(self):
        self.storage.base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def fixed_headers(self) -> dict:
        return dict(self.capture.fixed_headers)

    @classmethod
    def from_env(cls) -> "BulkOpsConfig":
        capture = CaptureConfig(
            target_pattern=os.getenv("BULKOPS_TARGET_PATTERN", CaptureConfig.target_pattern),
            id_fields=_env_tuple("BULKOPS_ID_FIELDS", CaptureConfig.id_fields),
            capture_hosts=_env_tuple("BULKOPS_CAPTURE_HOSTS", CaptureConfig.capture_hosts),
        )

        proxy = ProxyConfig(
            listen_host=os.getenv("BULKOPS_PROXY_HOST", "127.0.0.1"),
            listen_port=int(os.getenv("BULKOPS_PROXY_PORT", "8080")),
        )

        executor = ExecutorConfig(
            batch_size=int(os.getenv("BULKOPS_BATCH_SIZE", "5")),
            inter_batch_delay_ms=int(os.getenv("BULKOPS_BATCH_DELAY_MS", "1000")),
            max_attempts=int(os.getenv("BULKOPS_MAX_ATTEMPTS", "3")),
            backoff_base_ms=int(os.getenv("BULKOPS_BACKOFF_MS", "2000")),
            request_timeout=float(os.getenv("BULKOPS_REQUEST_TIMEOUT", "30")),
            max_credential_age_s=float(os.getenv("BULKOPS_MAX_CREDENTIAL_AGE", "0")),
            skip_markers=_env_tuple("BULKOPS_SKIP_MARKERS", ()),
        )

        base_dir = Path(os.getenv("BULKOPS_DATA_DIR", str(Path.home() / ".bulkops")))
        storage = StorageConfig(base_dir=base_dir)

        log = LogConfig(
            level=os.getenv("BULKOPS_LOG_LEVEL", "INFO"),
            file_enabled=_env_bool("BULKOPS_LOG_FILE", "true"),
        )

        return cls(
            capture=capture,
            proxy=proxy,
            executor=executor,
            storage=storage,
            log=log,
            debug=_env_bool("BULKOPS_DEBUG"),
            api_host=os.getenv("BULKOPS_API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("BULKOPS_API_PORT", "8766")),
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[BulkOpsConfig] = None


def get_config() -> BulkOpsConfig:
    """
    Get the global configuration instance, loading it from the environment
    on first use.
    """
    global _config
    if _config is None:
        _config = BulkOpsConfig.from_env()
    return _config


def set_config(config: Optional[BulkOpsConfig]) -> None:
    """
    Replace the global configuration (mainly used for testing).

    Passing None forces the next get_config() to reload from the environment.
    """
    global _config
    _config = config


def setup_logging(config: Optional[BulkOpsConfig] = None) -> None:
    """
    Configure console and rotating file logging. Call once at startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
