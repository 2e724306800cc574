# pinger/config.py
# NOTE:
# The wallet keypair is read from WALLET_PRIVATE_KEYPAIR at startup and never
# written anywhere. Keep it out of git.

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

# Reporting sink (validators.app ping-thing ingest)
VA_ENDPOINT = "https://www.validators.app/api/v1/ping-thing/mainnet"

# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 1.0
RPC_TIMEOUT_MAX_S = 10.0
RPC_DEFAULT_TIMEOUT_S = 5.0
RPC_RETRY_COUNT = 1
RPC_BACKOFF_BASE_S = 0.35
RPC_RATE_LIMIT_BACKOFF_S = 0.35

# Probe cycle
TX_CONFIRMATION_TIMEOUT_S = 20.0
TX_RESEND_INTERVAL_MS = 2000
TXS_PER_MINUTE_LIMIT = 10
RATE_WINDOW_S = 60.0

# Canary transaction: self-transfer of 5000 lamports under a 500 CU limit.
PROBE_COMPUTE_UNIT_LIMIT = 500
PROBE_TRANSFER_LAMPORTS = 5000

# Freshness gate (per-cell maximum age, then the absolute fatal bound)
BLOCKHASH_MAX_AGE_MS = 30000
SLOT_MAX_AGE_MS = 50
FEE_MAX_AGE_MS = 5000
STALE_FATAL_S = 10.0
GATE_RETRY_MS = 1

# Watchers
WATCHER_RECONNECT_DELAY_S = 5.0
WATCHER_MAX_RECONNECTS = 10
FEE_POLL_INTERVAL_MS = 350
FEE_MAX_POLL_FAILURES = 30
BALANCE_POLL_INTERVAL_S = 5.0

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")
SUBSCRIPTION_MODES = ("signature", "wallet")

LAMPORTS_PER_SOL = 1_000_000_000


class ConfigError(ValueError):
    """Missing or malformed configuration value."""


def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    raw = env.get(key)
    if raw is None:
        return None
    val = str(raw).strip()
    return val or None


def _require(env: Mapping[str, str], key: str) -> str:
    val = _get(env, key)
    if val is None:
        raise ConfigError(f"{key} must be set")
    return val


def _flag(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    val = _get(env, key)
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    val = _get(env, key)
    if val is None:
        return int(default)
    try:
        return int(val)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {val!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    val = _get(env, key)
    if val is None:
        return float(default)
    try:
        return float(val)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {val!r}") from None


def parse_commitment(value: str) -> str:
    c = str(value or "").strip().lower()
    if c not in COMMITMENT_LEVELS:
        raise ConfigError(
            f"Invalid commitment level: {value}. Must be one of: {', '.join(COMMITMENT_LEVELS)}"
        )
    return c


@dataclass
class Settings:
    # Endpoints
    rpc_endpoint: str
    ws_endpoint: str
    wallet_keypair: str
    pinger_region: str
    ws_x_token: Optional[str] = None
    send_tx_endpoint: Optional[str] = None

    # Reporting
    va_api_key: Optional[str] = None
    va_endpoint: str = VA_ENDPOINT
    skip_validators_app: bool = False
    skip_prometheus: bool = False
    prometheus_host: str = "127.0.0.1"
    prometheus_port: int = 9090
    pinger_name: str = "UNSET"

    # Loop
    sleep_ms_loop: int = 0
    txs_per_minute_limit: int = TXS_PER_MINUTE_LIMIT
    commitment: str = "confirmed"
    tx_confirmation_timeout_s: float = TX_CONFIRMATION_TIMEOUT_S
    tx_resend_interval_ms: int = TX_RESEND_INTERVAL_MS
    subscription_mode: str = "signature"

    # Fees
    use_priority_fee: bool = False
    priority_fee_percentile: int = 5000

    # Freshness
    blockhash_max_age_ms: int = BLOCKHASH_MAX_AGE_MS
    slot_max_age_ms: int = SLOT_MAX_AGE_MS
    fee_max_age_ms: int = FEE_MAX_AGE_MS
    stale_fatal_s: float = STALE_FATAL_S

    # Watchers
    watcher_reconnect_delay_s: float = WATCHER_RECONNECT_DELAY_S
    watcher_max_reconnects: int = WATCHER_MAX_RECONNECTS

    # Extras
    min_balance_sol: float = 0.0
    results_dir: Optional[str] = None
    verbose_log: bool = False

    def redacted(self) -> dict:
        """Settings as a dict with secrets masked, for the startup log line."""
        out = dict(self.__dict__)
        for key in ("wallet_keypair", "va_api_key", "ws_x_token"):
            out[key] = "[SET]" if out.get(key) else "[NOT SET]"
        return out


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables (os.environ by default)."""
    if env is None:
        env = os.environ

    skip_va = _flag(env, "SKIP_VALIDATORS_APP")
    va_api_key = _get(env, "VA_API_KEY")
    if not skip_va and not va_api_key:
        raise ConfigError("VA_API_KEY must be set (or SKIP_VALIDATORS_APP=true)")

    mode = (_get(env, "TX_SUBSCRIPTION_MODE") or "signature").lower()
    if mode not in SUBSCRIPTION_MODES:
        raise ConfigError(f"TX_SUBSCRIPTION_MODE must be one of {SUBSCRIPTION_MODES}, got {mode!r}")

    settings = Settings(
        rpc_endpoint=_require(env, "RPC_ENDPOINT"),
        ws_endpoint=_require(env, "WS_ENDPOINT"),
        wallet_keypair=_require(env, "WALLET_PRIVATE_KEYPAIR"),
        pinger_region=_require(env, "PINGER_REGION"),
        ws_x_token=_get(env, "WS_X_TOKEN"),
        send_tx_endpoint=_get(env, "SEND_TX_ENDPOINT"),
        va_api_key=va_api_key,
        va_endpoint=_get(env, "VA_ENDPOINT") or VA_ENDPOINT,
        skip_validators_app=skip_va,
        skip_prometheus=_flag(env, "SKIP_PROMETHEUS"),
        prometheus_host=_get(env, "PROMETHEUS_HOST") or "127.0.0.1",
        prometheus_port=_int(env, "PROMETHEUS_PORT", 9090),
        pinger_name=_get(env, "PINGER_NAME") or "UNSET",
        sleep_ms_loop=max(0, _int(env, "SLEEP_MS_LOOP", 0)),
        txs_per_minute_limit=_int(env, "TXS_PER_MINUTE_LIMIT", TXS_PER_MINUTE_LIMIT),
        commitment=parse_commitment(_get(env, "COMMITMENT") or "confirmed"),
        tx_confirmation_timeout_s=_float(env, "TX_CONFIRMATION_TIMEOUT", TX_CONFIRMATION_TIMEOUT_S),
        tx_resend_interval_ms=_int(env, "TX_RESEND_INTERVAL_MS", TX_RESEND_INTERVAL_MS),
        subscription_mode=mode,
        use_priority_fee=_flag(env, "USE_PRIORITY_FEE"),
        priority_fee_percentile=_int(env, "PRIORITY_FEE_PERCENTILE", 5000),
        blockhash_max_age_ms=_int(env, "BLOCKHASH_MAX_AGE_MS", BLOCKHASH_MAX_AGE_MS),
        slot_max_age_ms=_int(env, "SLOT_MAX_AGE_MS", SLOT_MAX_AGE_MS),
        fee_max_age_ms=_int(env, "FEE_MAX_AGE_MS", FEE_MAX_AGE_MS),
        stale_fatal_s=_float(env, "STALE_FATAL_S", STALE_FATAL_S),
        watcher_reconnect_delay_s=_float(env, "WATCHER_RECONNECT_DELAY_S", WATCHER_RECONNECT_DELAY_S),
        watcher_max_reconnects=_int(env, "WATCHER_MAX_RECONNECTS", WATCHER_MAX_RECONNECTS),
        min_balance_sol=_float(env, "MIN_BALANCE_SOL", 0.0),
        results_dir=_get(env, "RESULTS_DIR"),
        verbose_log=_flag(env, "VERBOSE_LOG"),
    )
    if settings.txs_per_minute_limit <= 0:
        raise ConfigError("TXS_PER_MINUTE_LIMIT must be positive")
    if settings.tx_resend_interval_ms <= 0:
        raise ConfigError("TX_RESEND_INTERVAL_MS must be positive")
    return settings
