"""
StakeFlow - staking position and reward accounting engine.

Key features:
- Tiered staking positions with duration-based staking power
- Pro-rata weekly reward emission with an APY cap
- Early-exit penalties split between reward pool and treasury
- Cooldown withdrawals and time-locked reward vesting
- SQLite persistence with serialized, versioned write transactions
- Intent outbox and event indexer for the external ledger
"""

__version__ = "0.3.0"
__all__ = [
    "precision",
    "errors",
    "tiers",
    "reward_math",
    "models",
    "address",
    "storage",
    "aggregates",
    "positions",
    "rewards",
    "submission",
    "scheduler",
    "reconciliation",
    "engine",
    "config",
    "logging_config",
]
