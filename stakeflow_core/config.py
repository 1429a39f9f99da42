"""
TOML-based configuration for StakeFlow.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from stakeflow_core.config import load_config
    cfg = load_config("stakeflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]

from stakeflow_core.precision import SECONDS_PER_HOUR, SECONDS_PER_WEEK, SECONDS_PER_YEAR


@dataclass
class StakingConfig:
    """Reward, cooldown and vesting economics."""
    weekly_emission_rate_bp: int = 21      # 0.21 % of the pool per week
    emission_precision: int = 10_000
    max_apy_bp: int = 7_500
    cooldown_period: int = SECONDS_PER_WEEK
    vesting_period: int = SECONDS_PER_YEAR
    min_claim_interval: int = SECONDS_PER_WEEK
    min_stake_amount: int = 1_000_000      # units (0.001 STK)


@dataclass
class SchedulerConfig:
    """Periodic job cadence and retry bounds (seconds)."""
    epoch_interval: int = SECONDS_PER_WEEK
    epoch_check_interval: int = SECONDS_PER_HOUR
    cooldown_sweep_interval: int = SECONDS_PER_HOUR
    submission_poll_interval: int = 10
    indexer_poll_interval: int = 120
    max_submission_attempts: int = 5
    backoff_base_seconds: int = 1


@dataclass
class LedgerConfig:
    """External ledger endpoints.  Empty URLs disable the matching job."""
    program_id: str = "stakeflow-program"
    submission_url: str = ""
    rpc_url: str = ""
    request_timeout: float = 30.0
    event_batch_size: int = 50


@dataclass
class StorageConfig:
    """Persistence settings."""
    path: str = "data/stakeflow.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class StakeFlowConfig:
    """Top-level configuration container."""
    staking: StakingConfig = field(default_factory=StakingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    # Raw ``[[tiers]]`` tables; empty means "install the default catalog".
    tiers: list[dict[str, Any]] = field(default_factory=list)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> StakeFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        STAKEFLOW_DB_PATH                 -> storage.path
        STAKEFLOW_LOG_LEVEL               -> logging.level
        STAKEFLOW_LOG_FMT                 -> logging.format
        STAKEFLOW_PROGRAM_ID              -> ledger.program_id
        STAKEFLOW_SUBMISSION_URL          -> ledger.submission_url
        STAKEFLOW_RPC_URL                 -> ledger.rpc_url
        STAKEFLOW_COOLDOWN_PERIOD         -> staking.cooldown_period
        STAKEFLOW_VESTING_PERIOD          -> staking.vesting_period
        STAKEFLOW_EMISSION_RATE_BP        -> staking.weekly_emission_rate_bp
        STAKEFLOW_MAX_SUBMISSION_ATTEMPTS -> scheduler.max_submission_attempts
    """
    cfg = StakeFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("staking", cfg.staking),
                ("scheduler", cfg.scheduler),
                ("ledger", cfg.ledger),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])
            if isinstance(data.get("tiers"), list):
                cfg.tiers = [dict(t) for t in data["tiers"]]

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("STAKEFLOW_DB_PATH"):
        cfg.storage.path = v
    if v := os.environ.get("STAKEFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("STAKEFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("STAKEFLOW_PROGRAM_ID"):
        cfg.ledger.program_id = v
    if v := os.environ.get("STAKEFLOW_SUBMISSION_URL"):
        cfg.ledger.submission_url = v
    if v := os.environ.get("STAKEFLOW_RPC_URL"):
        cfg.ledger.rpc_url = v
    if v := os.environ.get("STAKEFLOW_COOLDOWN_PERIOD"):
        cfg.staking.cooldown_period = int(v)
    if v := os.environ.get("STAKEFLOW_VESTING_PERIOD"):
        cfg.staking.vesting_period = int(v)
    if v := os.environ.get("STAKEFLOW_EMISSION_RATE_BP"):
        cfg.staking.weekly_emission_rate_bp = int(v)
    if v := os.environ.get("STAKEFLOW_MAX_SUBMISSION_ATTEMPTS"):
        cfg.scheduler.max_submission_attempts = int(v)

    return cfg
