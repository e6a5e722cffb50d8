#!/usr/bin/env python3
"""config_env YAML-first guard and typed section builders."""

from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import config_env
from config_env import (
    apply_env_overrides,
    build_detector_config,
    build_executor_config,
    build_feed_config,
    build_ledger_config,
    build_reconciler_config,
    db_path_from_config,
    load_config,
)
import env_utils
from env_utils import WICKGUARD_ROOT


def test_whitelisted_connectivity_env_overrides_apply(monkeypatch) -> None:
    monkeypatch.setenv("WICKGUARD_RPC_URL", "http://node:8545")
    monkeypatch.setenv("WICKGUARD_CHAIN_ID", "137")
    monkeypatch.setenv("WICKGUARD_DRY_RUN", "true")
    cfg = {"config": {"ledger": {"rpc_url": "http://yaml", "dry_run": False}}}

    out = apply_env_overrides(cfg)

    assert out["config"]["ledger"]["rpc_url"] == "http://node:8545"
    assert out["config"]["ledger"]["chain_id"] == 137
    assert out["config"]["ledger"]["dry_run"] is True
    assert cfg["config"]["ledger"]["rpc_url"] == "http://yaml"


def test_tuning_env_is_ignored_yaml_first(monkeypatch, capsys) -> None:
    monkeypatch.setattr(config_env, "_WARNED_IGNORED_ENV_OVERRIDES", False)
    monkeypatch.setenv("WICKGUARD_BODY_RATIO_MAX", "0.9")
    cfg = {"config": {"detector": {"body_ratio_max": 0.25}}}

    out = apply_env_overrides(cfg)

    assert out["config"]["detector"]["body_ratio_max"] == 0.25
    assert "WICKGUARD_BODY_RATIO_MAX" in capsys.readouterr().out


def test_signer_key_comes_from_env_only(monkeypatch) -> None:
    monkeypatch.setenv("WICKGUARD_SIGNER_KEY", "0x" + "11" * 32)
    cfg = {"config": {"ledger": {"signer_key": "0xfromyaml"}}}

    ledger = build_ledger_config(cfg)

    assert ledger.signer_key == "0x" + "11" * 32


def test_detector_config_defaults_and_fallbacks() -> None:
    det = build_detector_config({})
    assert det.symbol == "BTCUSDT"
    assert det.body_ratio_max == Decimal("0.3")
    assert det.range_threshold == Decimal("0.1")

    det = build_detector_config({"config": {
        "symbol": "ethusdt",
        "detector": {"body_ratio_max": "bogus", "range_threshold": 0.05, "poll_interval_sec": -3},
    }})
    assert det.symbol == "ETHUSDT"
    assert det.body_ratio_max == Decimal("0.3")
    assert det.range_threshold == Decimal("0.05")
    assert det.poll_interval_sec >= 0.1


def test_ledger_executor_reconciler_feed_sections() -> None:
    cfg = {"config": {
        "ledger": {"chain_id": 0, "max_block_range": 500, "token_decimals": 18},
        "executor": {"confirmation_timeout_sec": 60, "max_concurrency": 0},
        "reconciler": {"interval_sec": 10, "lookback_blocks": 250, "expiry_sweep": True},
        "feed": {"source": "kraken", "interval": "5m"},
    }}

    ledger = build_ledger_config(cfg)
    assert ledger.chain_id is None
    assert ledger.max_block_range == 500
    assert ledger.token_decimals == 18

    executor = build_executor_config(cfg)
    assert executor.confirmation_timeout_sec == 60.0
    assert executor.max_concurrency == 1

    reconciler = build_reconciler_config(cfg)
    assert reconciler.lookback_blocks == 250
    assert reconciler.expiry_sweep is True

    feed = build_feed_config(cfg)
    assert feed.source == "none"
    assert feed.interval == "5m"


def test_db_path_resolution(tmp_path) -> None:
    assert db_path_from_config({"config": {"db_path": str(tmp_path / "x.db")}}) == str(tmp_path / "x.db")
    assert db_path_from_config({"config": {"db_path": "state/y.db"}}) == str(Path(WICKGUARD_ROOT) / "state" / "y.db")


def test_load_config_reads_yaml(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("WICKGUARD_SYMBOL", raising=False)
    path = tmp_path / "wickguard.yaml"
    path.write_text("config:\n  symbol: SOLUSDT\n  reconciler:\n    lookback_blocks: 42\n")

    cfg = load_config(str(path))

    assert build_detector_config(cfg).symbol == "SOLUSDT"
    assert build_reconciler_config(cfg).lookback_blocks == 42
    assert isinstance(load_config(str(tmp_path / "missing.yaml")), dict)


def test_env_accessors(monkeypatch) -> None:
    monkeypatch.setenv("WICKGUARD_TEST_INT", " 42 ")
    monkeypatch.setenv("WICKGUARD_TEST_BOOL", "off")
    monkeypatch.setenv("WICKGUARD_TEST_BLANK", "   ")

    assert env_utils.env_int("WICKGUARD_TEST_INT", 0) == 42
    assert env_utils.env_bool("WICKGUARD_TEST_BOOL", True) is False
    assert env_utils.env_present("WICKGUARD_TEST_BLANK") is False
    assert env_utils.env_str("WICKGUARD_TEST_BLANK", "fallback") == "fallback"
