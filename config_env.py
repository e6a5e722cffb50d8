"""Load wickguard.yaml and apply env overrides.

YAML-first: tuning parameters (thresholds, intervals, chunk sizes) come from
wickguard.yaml. Only connectivity/runtime plumbing may be overridden from the
environment, and the signer key is read from the environment only.
"""

from __future__ import annotations

from copy import deepcopy
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from env_utils import (
    WICKGUARD_CONFIG_FILE,
    WICKGUARD_DB_PATH,
    WICKGUARD_ROOT,
    env_bool,
    env_int,
    env_present,
    env_str,
)


PathKey = Tuple[str, ...]

ALLOWED_ENV_OVERRIDES = {
    "WICKGUARD_DB_PATH",
    "WICKGUARD_SYMBOL",
    "WICKGUARD_RPC_URL",
    "WICKGUARD_CONTRACT_ADDRESS",
    "WICKGUARD_CHAIN_ID",
    "WICKGUARD_DRY_RUN",
}

# Read directly by the code that needs them; never copied into the config dict.
_RUNTIME_ONLY_ENV = {
    "WICKGUARD_ROOT",
    "WICKGUARD_CONFIG_FILE",
    "WICKGUARD_LOG_LEVEL",
    "WICKGUARD_SIGNER_KEY",
}

_WARNED_IGNORED_ENV_OVERRIDES = False


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    print(
        "Config warning: ignoring non-whitelisted WICKGUARD env overrides "
        "(YAML-first mode). "
        f"Ignored keys: {', '.join(sorted(names))}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if not env_present(env_name):
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "bool":
            value = env_bool(env_name, bool(default) if default is not None else False)
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("config", "db_path"), "WICKGUARD_DB_PATH")
    override(("config", "symbol"), "WICKGUARD_SYMBOL")
    override(("config", "ledger", "rpc_url"), "WICKGUARD_RPC_URL")
    override(("config", "ledger", "contract_address"), "WICKGUARD_CONTRACT_ADDRESS")
    override(("config", "ledger", "chain_id"), "WICKGUARD_CHAIN_ID", kind="int")
    override(("config", "ledger", "dry_run"), "WICKGUARD_DRY_RUN", kind="bool")

    env = environ if environ is not None else os.environ
    ignored = {
        name for name in env
        if name.startswith("WICKGUARD_")
        and name not in ALLOWED_ENV_OVERRIDES
        and name not in _RUNTIME_ONLY_ENV
    }
    _warn_ignored_env_overrides_once(ignored)
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load wickguard.yaml (if present) with env overrides applied."""
    config_path = Path(path or WICKGUARD_CONFIG_FILE)
    if config_path.exists():
        with open(config_path, "r") as f:
            return apply_env_overrides(yaml.safe_load(f) or {})
    return apply_env_overrides({})


# =============================================================================
# Typed section views
# =============================================================================

def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    return _get_path(config, ("config", name), {}) or {}


def _as_float(value: Any, default: float, *, min_value: Optional[float] = None) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return float(default)
    if out != out:
        return float(default)
    if min_value is not None and out < float(min_value):
        return float(default)
    return out


def _as_int(value: Any, default: int, *, min_value: Optional[int] = None) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError):
        return int(default)
    if min_value is not None and out < int(min_value):
        return int(default)
    return out


def db_path_from_config(config: Dict[str, Any]) -> str:
    """Configured DB path; relative paths resolve against WICKGUARD_ROOT."""
    raw = _get_path(config, ("config", "db_path"))
    if not raw:
        return str(WICKGUARD_DB_PATH)
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = Path(WICKGUARD_ROOT) / path
    return str(path)


@dataclass
class DetectorConfig:
    symbol: str = "BTCUSDT"
    body_ratio_max: Decimal = Decimal("0.30")
    range_threshold: Decimal = Decimal("0.10")
    poll_interval_sec: float = 5.0


@dataclass
class LedgerConfig:
    rpc_url: str = ""
    contract_address: str = ""
    chain_id: Optional[int] = None
    token_decimals: int = 6
    gas_limit: int = 300_000
    max_block_range: int = 1000
    request_timeout_sec: float = 30.0
    receipt_poll_sec: float = 2.0
    dry_run: bool = False
    signer_key: Optional[str] = None


@dataclass
class ExecutorConfig:
    confirmation_timeout_sec: float = 300.0
    max_concurrency: int = 1


@dataclass
class ReconcilerConfig:
    interval_sec: float = 30.0
    lookback_blocks: int = 1000
    expiry_sweep: bool = False


def build_detector_config(config: Dict[str, Any]) -> DetectorConfig:
    det = _section(config, "detector")
    defaults = DetectorConfig()
    return DetectorConfig(
        symbol=str(_get_path(config, ("config", "symbol")) or defaults.symbol).upper(),
        body_ratio_max=Decimal(str(_as_float(det.get("body_ratio_max"), 0.30, min_value=0.0))),
        range_threshold=Decimal(str(_as_float(det.get("range_threshold"), 0.10, min_value=0.0))),
        poll_interval_sec=_as_float(det.get("poll_interval_sec"), defaults.poll_interval_sec, min_value=0.1),
    )


def build_ledger_config(config: Dict[str, Any]) -> LedgerConfig:
    led = _section(config, "ledger")
    defaults = LedgerConfig()
    chain_id = _as_int(led.get("chain_id"), 0, min_value=0)
    return LedgerConfig(
        rpc_url=str(led.get("rpc_url") or ""),
        contract_address=str(led.get("contract_address") or ""),
        chain_id=chain_id or None,
        token_decimals=_as_int(led.get("token_decimals"), defaults.token_decimals, min_value=0),
        gas_limit=_as_int(led.get("gas_limit"), defaults.gas_limit, min_value=21_000),
        max_block_range=_as_int(led.get("max_block_range"), defaults.max_block_range, min_value=1),
        request_timeout_sec=_as_float(led.get("request_timeout_sec"), defaults.request_timeout_sec, min_value=1.0),
        receipt_poll_sec=_as_float(led.get("receipt_poll_sec"), defaults.receipt_poll_sec, min_value=0.05),
        dry_run=bool(led.get("dry_run", False)),
        signer_key=env_str("WICKGUARD_SIGNER_KEY"),
    )


def build_executor_config(config: Dict[str, Any]) -> ExecutorConfig:
    ex = _section(config, "executor")
    defaults = ExecutorConfig()
    return ExecutorConfig(
        confirmation_timeout_sec=_as_float(
            ex.get("confirmation_timeout_sec"), defaults.confirmation_timeout_sec, min_value=1.0
        ),
        max_concurrency=_as_int(ex.get("max_concurrency"), defaults.max_concurrency, min_value=1),
    )


def build_reconciler_config(config: Dict[str, Any]) -> ReconcilerConfig:
    rc = _section(config, "reconciler")
    defaults = ReconcilerConfig()
    return ReconcilerConfig(
        interval_sec=_as_float(rc.get("interval_sec"), defaults.interval_sec, min_value=1.0),
        lookback_blocks=_as_int(rc.get("lookback_blocks"), defaults.lookback_blocks, min_value=0),
        expiry_sweep=bool(rc.get("expiry_sweep", False)),
    )


@dataclass
class FeedConfig:
    source: str = "none"
    interval: str = "1m"
    poll_interval_sec: float = 15.0
    base_url: str = "https://api.binance.com"


def build_feed_config(config: Dict[str, Any]) -> FeedConfig:
    fd = _section(config, "feed")
    defaults = FeedConfig()
    source = str(fd.get("source") or defaults.source).strip().lower()
    if source not in ("none", "binance"):
        source = defaults.source
    return FeedConfig(
        source=source,
        interval=str(fd.get("interval") or defaults.interval),
        poll_interval_sec=_as_float(fd.get("poll_interval_sec"), defaults.poll_interval_sec, min_value=1.0),
        base_url=str(fd.get("base_url") or defaults.base_url).rstrip("/"),
    )
