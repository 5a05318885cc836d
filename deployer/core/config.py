"""Configuration loading utilities for YAML and environment based settings."""

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

import yaml

from .logging_config import get_logger


logger = get_logger(__name__)
_BASE_DIR = Path(__file__).resolve().parent.parent
_DEFAULT_CONFIG_PATH = _BASE_DIR.parent / "config.yml"
_DEFAULT_PROGRAM_ID = "4dWBvsjopo5Z145Xmse3Lx41G1GKpMyWMLc6p4a52T4N"
_CLUSTER_MONIKERS = {
    "localnet": "localhost",
    "localhost": "localhost",
    "devnet": "devnet",
    "testnet": "testnet",
    "mainnet": "mainnet-beta",
    "mainnet-beta": "mainnet-beta",
}


@dataclass(frozen=True)
class AppSettings:
    """Deployer settings loaded from `config.yml` with environment overrides."""

    app_name: str
    debug: bool
    host: str
    port: int
    log_level: str
    cors_origins: list[str]
    rpc_url: str
    program_id: str
    signer_keypair_path: str
    commitment: str
    tx_timeout_sec: int
    indexer_url: str
    indexer_timeout_sec: int
    cluster: str
    deploy_tool_url: str
    deploy_tool_path: str
    keygen_tool_path: str
    deployer_keypair_path: str
    tool_timeout_sec: int
    binary_storage_path: str
    upload_path: str
    db_path: str
    max_upload_bytes: int
    max_retries: int
    retry_delay_sec: float
    poll_interval_sec: float
    event_queue_size: int
    confirmation_delay_sec: float
    confirmation_attempts: int
    sweep_enabled: bool
    sweep_initial_delay_sec: float
    sweep_interval_sec: float
    monitor_enabled: bool


def _to_bool(value: Any, default: bool = False) -> bool:
    """Convert value to bool with a default fallback."""
    try:
        if isinstance(value, bool):
            return value
        return value.strip().lower() in {"1", "true", "yes", "on"}
    except (AttributeError, ValueError):
        logger.warning("Invalid boolean value '%s'. Using default=%s", value, default)
        return default


def _to_int(value: Any, default: int) -> int:
    """Convert value to int with a default fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid integer value '%s'. Using default=%s", value, default)
        return default


def _to_float(value: Any, default: float) -> float:
    """Convert value to float with a default fallback."""
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid float value '%s'. Using default=%s", value, default)
        return default


def _to_list(value: Any) -> list[str]:
    """Convert list-like or comma-separated value to list[str]."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


def resolve_cluster_url(cluster: str, override: Any = None) -> str:
    """Return the deploy tool's `--url` value.

    An explicit `deploy_tool.url` wins; otherwise the cluster name is mapped to
    the tool's moniker (`localnet` -> `localhost`, `devnet`, `testnet`,
    `mainnet-beta`). Unknown names fall back to `localhost`.
    """
    if override:
        return str(override)
    moniker = _CLUSTER_MONIKERS.get(str(cluster).strip().lower())
    if moniker is None:
        logger.warning("Unknown cluster '%s'. Using default=localhost", cluster)
        return "localhost"
    return moniker


def _config_path() -> Path:
    """Resolve config file location, honoring `DEPLOYER_CONFIG_PATH`."""
    override = os.getenv("DEPLOYER_CONFIG_PATH")
    return Path(override) if override else _DEFAULT_CONFIG_PATH


def _read_config() -> dict:
    """Read and parse YAML configuration."""
    config_path = _config_path()
    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            config_data = yaml.safe_load(config_file) or {}
        logger.info("Configuration loaded from %s", config_path)
        return config_data
    except FileNotFoundError:
        logger.warning("Config file not found at %s. Falling back to defaults.", config_path)
        return {}
    except Exception:
        logger.exception("Failed to load config file from %s", config_path)
        return {}


def _pick(section: dict, key: str, env_name: str, default: Any = None) -> Any:
    """Return env override, then YAML value, then default."""
    env_value = os.getenv(env_name)
    if env_value is not None and env_value != "":
        return env_value
    value = section.get(key)
    return default if value is None else value


def load_settings() -> AppSettings:
    """Load and validate application settings."""
    config = _read_config()
    app_cfg = config.get("app", {}) or {}
    chain_cfg = config.get("chain", {}) or {}
    indexer_cfg = config.get("indexer", {}) or {}
    tool_cfg = config.get("deploy_tool", {}) or {}
    storage_cfg = config.get("storage", {}) or {}
    orchestrator_cfg = config.get("orchestrator", {}) or {}
    sweep_cfg = config.get("sweep", {}) or {}

    cluster = str(_pick(tool_cfg, "cluster", "CLUSTER", "localnet"))
    deployer_keypair_path = str(
        _pick(tool_cfg, "keypair_path", "DEPLOYER_KEYPAIR_PATH", "./keys/deployer-keypair.json")
    )

    return AppSettings(
        app_name=str(_pick(app_cfg, "name", "APP_NAME", "Program Loan Deployer")),
        debug=_to_bool(_pick(app_cfg, "debug", "DEBUG", False), False),
        host=str(_pick(app_cfg, "host", "HOST", "127.0.0.1")),
        port=_to_int(_pick(app_cfg, "port", "PORT", 3000), 3000),
        log_level=str(_pick(app_cfg, "log_level", "LOG_LEVEL", "INFO")).upper(),
        cors_origins=_to_list(
            _pick(
                app_cfg,
                "cors_origins",
                "CORS_ORIGINS",
                ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
            )
        ),
        rpc_url=str(_pick(chain_cfg, "rpc_url", "RPC_URL", "http://127.0.0.1:8899")),
        program_id=str(_pick(chain_cfg, "program_id", "PROGRAM_ID", _DEFAULT_PROGRAM_ID)),
        signer_keypair_path=str(
            _pick(chain_cfg, "signer_keypair_path", "SIGNER_KEYPAIR_PATH", deployer_keypair_path)
        ),
        commitment=str(_pick(chain_cfg, "commitment", "COMMITMENT", "confirmed")),
        tx_timeout_sec=_to_int(_pick(chain_cfg, "tx_timeout_sec", "TX_TIMEOUT_SEC", 60), 60),
        indexer_url=str(
            _pick(indexer_cfg, "url", "INDEXER_URL", "http://127.0.0.1:18488/subgraphs")
        ),
        indexer_timeout_sec=_to_int(_pick(indexer_cfg, "timeout_sec", "INDEXER_TIMEOUT_SEC", 15), 15),
        cluster=cluster,
        deploy_tool_url=resolve_cluster_url(cluster, _pick(tool_cfg, "url", "DEPLOY_TOOL_URL")),
        deploy_tool_path=str(_pick(tool_cfg, "path", "DEPLOY_TOOL_PATH", "solana")),
        keygen_tool_path=str(_pick(tool_cfg, "keygen_path", "KEYGEN_TOOL_PATH", "solana-keygen")),
        deployer_keypair_path=deployer_keypair_path,
        tool_timeout_sec=_to_int(_pick(tool_cfg, "timeout_sec", "TOOL_TIMEOUT_SEC", 600), 600),
        binary_storage_path=str(_pick(storage_cfg, "binary_path", "BINARY_STORAGE_PATH", "./binaries")),
        upload_path=str(_pick(storage_cfg, "upload_path", "UPLOAD_PATH", "./uploads")),
        db_path=str(_pick(storage_cfg, "db_path", "DB_PATH", "./deployer-state/state.db")),
        max_upload_bytes=_to_int(
            _pick(storage_cfg, "max_upload_bytes", "MAX_UPLOAD_BYTES", 100 * 1024 * 1024),
            100 * 1024 * 1024,
        ),
        max_retries=_to_int(_pick(orchestrator_cfg, "max_retries", "MAX_RETRIES", 3), 3),
        retry_delay_sec=_to_float(_pick(orchestrator_cfg, "retry_delay_sec", "RETRY_DELAY_SEC", 5.0), 5.0),
        poll_interval_sec=_to_float(
            _pick(orchestrator_cfg, "poll_interval_sec", "POLL_INTERVAL_SEC", 5.0), 5.0
        ),
        event_queue_size=_to_int(_pick(orchestrator_cfg, "event_queue_size", "EVENT_QUEUE_SIZE", 100), 100),
        confirmation_delay_sec=_to_float(
            _pick(orchestrator_cfg, "confirmation_delay_sec", "CONFIRMATION_DELAY_SEC", 2.0), 2.0
        ),
        confirmation_attempts=_to_int(
            _pick(orchestrator_cfg, "confirmation_attempts", "CONFIRMATION_ATTEMPTS", 5), 5
        ),
        monitor_enabled=_to_bool(_pick(orchestrator_cfg, "monitor_enabled", "MONITOR_ENABLED", True), True),
        sweep_enabled=_to_bool(_pick(sweep_cfg, "enabled", "SWEEP_ENABLED", True), True),
        sweep_initial_delay_sec=_to_float(
            _pick(sweep_cfg, "initial_delay_sec", "SWEEP_INITIAL_DELAY_SEC", 60.0), 60.0
        ),
        sweep_interval_sec=_to_float(_pick(sweep_cfg, "interval_sec", "SWEEP_INTERVAL_SEC", 1800.0), 1800.0),
    )
