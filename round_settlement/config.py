"""Core application configuration & tunable settlement rules.

Everything that may evolve per deployment (ledger endpoints, queue backend,
retry/backoff policy, webhook authentication) is centralized here so it can be
adjusted without diving into service logic. Values are read from environment
variables once at import; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ------------------------------- Ledger ----------------------------------- #
LEDGER_SETTINGS: dict[str, str | float | None] = {
    "rpc_url": os.getenv("LEDGER_RPC_URL") or None,
    "contract_address": os.getenv("ROUND_CONTRACT_ADDRESS") or None,
    # Signs the settlement transaction. Never logged.
    "admin_private_key": os.getenv("LEDGER_ADMIN_PRIVATE_KEY") or None,
    # Upper bound for any single read call (HTTP provider timeout)
    "read_timeout_seconds": float(os.getenv("LEDGER_READ_TIMEOUT", "10")),
    # Upper bound for waiting on a settlement receipt
    "confirmation_timeout_seconds": float(os.getenv("LEDGER_CONFIRMATION_TIMEOUT", "120")),
    "confirmation_poll_seconds": float(os.getenv("LEDGER_CONFIRMATION_POLL", "1")),
}

# Revert reasons the settlement call raises when there is nothing to do.
EXPECTED_REVERT_REASONS: dict[str, str] = {
    "no_entries": "No entries in raffle",
    "already_completed": "already completed",
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, str | int | float | bool] = {
    "use_redis": _env_bool("USE_REDIS_QUEUE", False),
    "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    "redis_key_prefix": os.getenv("REDIS_KEY_PREFIX", "settlement"),
    "redis_health_check_timeout": 2.0,
    "warn_depth": 1000,
    "max_in_memory": 5000,
    # Finished (completed) job records kept for inspection before eviction
    "retain_completed": 1000,
    "worker_count": int(os.getenv("SETTLEMENT_WORKERS", "2")),
    "poll_timeout_seconds": 5.0,
    # Grace period for in-flight jobs on shutdown
    "drain_timeout_seconds": 30.0,
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
    "base_ms": 1000,
    "factor": 2,          # Exponential factor
    "max_ms": 60_000,
    "max_attempts": 3,
    "jitter_pct": 0.0,
}

# -------------------------------- Webhook --------------------------------- #
WEBHOOK_SETTINGS: dict[str, str | None] = {
    "secret": os.getenv("WEBHOOK_SECRET") or None,
    "secret_header": os.getenv("WEBHOOK_SECRET_HEADER", "goldsky-webhook-secret"),
    # Entity name the indexer uses for rounds
    "round_entity": os.getenv("WEBHOOK_ROUND_ENTITY", "raffle"),
}

# -------------------------------- Startup --------------------------------- #
STARTUP_SETTINGS: dict[str, bool | int] = {
    "enabled": _env_bool("STARTUP_RECONCILIATION", True),
    # Rounds behind the current one that startup re-checks
    "lookback_rounds": 1,
}

SERVICE_NAME: str = "round-settlement-service"
SERVICE_VERSION: str = "1.0.0"

__all__ = [
    "LEDGER_SETTINGS",
    "EXPECTED_REVERT_REASONS",
    "QUEUE_SETTINGS",
    "BACKOFF_POLICY",
    "WEBHOOK_SETTINGS",
    "STARTUP_SETTINGS",
    "SERVICE_NAME",
    "SERVICE_VERSION",
]
