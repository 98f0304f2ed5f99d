"""Comprehensive configuration management for the trading agent."""

from __future__ import annotations

import os
import threading
import tomllib
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "BOT_MODE"


class AppMode(str, Enum):
    """Supported runtime modes."""

    DRY_RUN = "dry_run"
    REPLAY = "replay"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _normalize_keys(data: Any) -> Any:
    """Lower-case mapping keys so ``EXIT_STRATEGIES.STOP_LOSS`` style documents load."""

    if isinstance(data, dict):
        return {str(key).lower(): _normalize_keys(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_normalize_keys(item) for item in data]
    return data


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested_mode = os.getenv(MODE_ENV_VAR)
    if not requested_mode:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested_mode = cast(str, mode_section.get("active", AppMode.DRY_RUN.value))
        elif isinstance(mode_section, str):
            requested_mode = mode_section
    requested_mode = (requested_mode or AppMode.DRY_RUN.value).lower()

    if requested_mode in data and requested_mode != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested_mode]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = _select_profile(cast(Dict[str, Any], _normalize_keys(payload)))
    if not isinstance(merged, dict):
        return {}, path
    merged = dict(merged)
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ModeConfig(_FrozenModel):
    """Runtime mode and operational toggles."""

    active: AppMode = Field(default=AppMode.DRY_RUN)
    config_file: Optional[Path] = None


class WalletConfig(_FrozenModel):
    """Simulated wallet configuration (SOL)."""

    initial_balance_sol: float = Field(default=3.0, ge=0.0)
    transaction_fee_sol: float = Field(default=0.0, ge=0.0)


class ThresholdsConfig(_FrozenModel):
    """Lifecycle thresholds: USD market caps and percent moves."""

    heating_up_usd: float = Field(default=9_000.0, ge=0.0)
    first_pump_usd: float = Field(default=12_000.0, ge=0.0)
    dead_usd: float = Field(default=7_000.0, ge=0.0)
    dead_sample_count: int = Field(default=5, ge=1)
    pump_drawdown_pct: float = Field(default=30.0, gt=0.0, le=100.0)
    recovery_pct: float = Field(default=10.0, gt=0.0)

    @model_validator(mode="after")
    def _ordered_caps(self) -> "ThresholdsConfig":
        if self.first_pump_usd < self.heating_up_usd:
            raise ValueError("first_pump_usd must be >= heating_up_usd")
        return self


class PumpDetectionConfig(_FrozenModel):
    """Pump classification and metric windows (percent per second, ratios, ms)."""

    min_price_acceleration: float = Field(default=0.0)
    min_volume_spike: float = Field(default=2.5, ge=0.0)
    min_price_volume_correlation: float = Field(default=0.4, ge=0.0)
    min_gain_rate: float = Field(default=0.05, ge=0.0)
    max_price_volatility: float = Field(default=0.5, ge=0.0)
    large_token_mc_usd: float = Field(default=30_000.0, ge=0.0)
    min_mc_gain_rate: float = Field(default=0.05, ge=0.0)
    min_pump_count: int = Field(default=2, ge=0)
    pump_window_ms: int = Field(default=300_000, ge=1)
    acceleration_window_ms: int = Field(default=60_000, ge=1)
    spike_cooldown_ms: int = Field(default=10_000, ge=0)
    volatility_lookback: int = Field(default=20, ge=2)
    price_history_size: int = Field(default=500, ge=10)
    max_volume_spikes: int = Field(default=100, ge=1)


class MissedOpportunityConfig(_FrozenModel):
    """Significance thresholds for post-rejection traces."""

    enabled: bool = True
    min_gain_pct: float = Field(default=50.0, ge=0.0)
    max_time_to_peak_seconds: float = Field(default=300.0, gt=0.0)
    min_profit_sol: float = Field(default=0.1, ge=0.0)
    max_tracked: int = Field(default=500, ge=1)


class TraderAnalysisConfig(_FrozenModel):
    """Wallet reputation, wash-trade and coordination heuristics (milliseconds, percent, counts)."""

    enabled: bool = True
    wash_window_ms: int = Field(default=60_000, ge=0)
    wash_size_tolerance_pct: float = Field(default=10.0, ge=0.0)
    wash_penalty: float = Field(default=5.0, ge=0.0)
    rug_penalty: float = Field(default=20.0, ge=0.0)
    high_risk_score: float = Field(default=30.0, ge=0.0, le=100.0)
    medium_risk_score: float = Field(default=70.0, ge=0.0, le=100.0)
    co_trade_window_ms: int = Field(default=2_000, ge=0)
    relationship_threshold: int = Field(default=3, ge=1)
    group_risk_threshold: float = Field(default=60.0, ge=0.0, le=100.0)
    coordination_window_ms: int = Field(default=300_000, ge=1)
    coordination_threshold: int = Field(default=5, ge=2)
    one_sided_ratio: float = Field(default=0.8, gt=0.5, le=1.0)
    pattern_window_ms: int = Field(default=1_800_000, ge=1)
    suspicious_pattern_threshold: int = Field(default=3, ge=1)
    group_inactivity_ms: int = Field(default=3_600_000, ge=1)
    max_tracked_traders: int = Field(default=50_000, ge=1)
    max_tracked_mints: int = Field(default=2_000, ge=1)
    trades_per_trader: int = Field(default=50, ge=2)
    trades_per_mint: int = Field(default=200, ge=2)


class SafetyConfig(_FrozenModel):
    """Admission checks (seconds, SOL, counts, percent)."""

    min_token_age_seconds: float = Field(default=30.0, ge=0.0)
    min_liquidity_sol: float = Field(default=5.0, ge=0.0)
    min_holders: int = Field(default=25, ge=0)
    max_entry_market_cap_usd: float = Field(default=50_000.0, ge=0.0)
    max_top_holder_concentration: float = Field(default=30.0, ge=0.0, le=100.0)
    top_holder_count: int = Field(default=3, ge=1)
    post_pump_window_seconds: float = Field(default=120.0, ge=0.0)
    post_pump_dump_pct: float = Field(default=30.0, ge=0.0)
    creator_sell_window_seconds: float = Field(default=300.0, ge=0.0)
    max_creator_sell_volume_pct: float = Field(default=10.0, ge=0.0)
    retry_cooldown_seconds: float = Field(default=5.0, ge=0.0)
    retry_max_price_gain_pct: float = Field(default=20.0, ge=0.0)
    retry_memory_seconds: float = Field(default=3_600.0, gt=0.0)
    max_suspicious_trader_pct: float = Field(default=30.0, ge=0.0, le=100.0)
    reject_coordinated_selling: bool = True
    reject_distribution_phase: bool = True
    pump_detection: PumpDetectionConfig = Field(default_factory=PumpDetectionConfig)
    missed_opportunity: MissedOpportunityConfig = Field(default_factory=MissedOpportunityConfig)
    trader_analysis: TraderAnalysisConfig = Field(default_factory=TraderAnalysisConfig)


class PositionConfig(_FrozenModel):
    """Position sizing (SOL)."""

    min_position_size_sol: float = Field(default=0.1, gt=0.0)
    max_position_size_sol: float = Field(default=1.0, gt=0.0)
    position_size_market_cap_ratio: float = Field(default=0.01, ge=0.0)
    use_dynamic_sizing: bool = False
    volatility_scaling_factor: float = Field(default=1.0, ge=0.0)
    reference_volume_window_seconds: float = Field(default=300.0, gt=0.0)

    @model_validator(mode="after")
    def _ordered_limits(self) -> "PositionConfig":
        if self.max_position_size_sol < self.min_position_size_sol:
            raise ValueError("max_position_size_sol must be >= min_position_size_sol")
        return self


class StopLossConfig(_FrozenModel):
    enabled: bool = True
    threshold_pct: float = Field(default=10.0, gt=0.0, le=100.0)


class TrailingStopConfig(_FrozenModel):
    enabled: bool = True
    activation_pct: float = Field(default=20.0, ge=0.0)
    base_pct: float = Field(default=10.0, ge=0.0)
    volatility_multiplier: float = Field(default=50.0, ge=0.0)
    min_pct: float = Field(default=5.0, ge=0.0)
    max_pct: float = Field(default=25.0, ge=0.0)

    @model_validator(mode="after")
    def _ordered_bounds(self) -> "TrailingStopConfig":
        if self.max_pct < self.min_pct:
            raise ValueError("trailing stop max_pct must be >= min_pct")
        return self


class TakeProfitTier(_FrozenModel):
    threshold_pct: float = Field(gt=0.0)
    portion: float = Field(gt=0.0, le=1.0)


class TakeProfitConfig(_FrozenModel):
    enabled: bool = True
    tiers: List[TakeProfitTier] = Field(
        default_factory=lambda: [
            TakeProfitTier(threshold_pct=50.0, portion=0.3),
            TakeProfitTier(threshold_pct=100.0, portion=0.3),
            TakeProfitTier(threshold_pct=200.0, portion=0.2),
        ]
    )

    @field_validator("tiers")
    @classmethod
    def _sorted_tiers(cls, value: List[TakeProfitTier]) -> List[TakeProfitTier]:
        ordered = sorted(value, key=lambda tier: tier.threshold_pct)
        if sum(tier.portion for tier in ordered) > 1.0 + 1e-9:
            raise ValueError("take-profit portions must sum to at most 1.0")
        return ordered


class VolumeExitConfig(_FrozenModel):
    enabled: bool = True
    measurement_period_seconds: float = Field(default=900.0, gt=0.0)
    bucket_seconds: float = Field(default=300.0, gt=0.0)
    min_peak_volume_sol: float = Field(default=10.0, ge=0.0)
    volume_drop_threshold_pct: float = Field(default=60.0, ge=0.0, le=100.0)


class TimeExitConfig(_FrozenModel):
    enabled: bool = True
    max_hold_time_seconds: float = Field(default=1_800.0, gt=0.0)
    extension_threshold_pct: float = Field(default=50.0)
    extension_time_seconds: float = Field(default=1_800.0, ge=0.0)


class ExitStrategiesConfig(_FrozenModel):
    """Exit rules evaluated in fixed priority order."""

    stop_loss: StopLossConfig = Field(default_factory=StopLossConfig)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    take_profit: TakeProfitConfig = Field(default_factory=TakeProfitConfig)
    volume_based: VolumeExitConfig = Field(default_factory=VolumeExitConfig)
    time_based: TimeExitConfig = Field(default_factory=TimeExitConfig)


class NetworkDelayConfig(_FrozenModel):
    min_ms: float = Field(default=50.0, ge=0.0)
    max_ms: float = Field(default=200.0, ge=0.0)
    congestion_multiplier: float = Field(default=1.5, ge=1.0)
    congestion_probability: float = Field(default=0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered_delay(self) -> "NetworkDelayConfig":
        if self.max_ms < self.min_ms:
            raise ValueError("network delay max_ms must be >= min_ms")
        return self


class PriceImpactConfig(_FrozenModel):
    enabled: bool = True
    slippage_base: float = Field(default=1.0, ge=0.0)
    volume_multiplier: float = Field(default=1.2, ge=0.0)
    volatility_factor: float = Field(default=0.0, ge=0.0)


class SimulationModeConfig(_FrozenModel):
    """Latency and slippage model for simulated execution."""

    enabled: bool = True
    avg_block_time: float = Field(default=0.4, ge=0.0)
    min_time_between_tx_ms: float = Field(default=1_000.0, ge=0.0)
    random_seed: Optional[int] = None
    network_delay: NetworkDelayConfig = Field(default_factory=NetworkDelayConfig)
    price_impact: PriceImpactConfig = Field(default_factory=PriceImpactConfig)


class TransactionConfig(_FrozenModel):
    simulation_mode: SimulationModeConfig = Field(default_factory=SimulationModeConfig)


class PositionManagerConfig(_FrozenModel):
    """Position bookkeeping cadence (seconds)."""

    snapshot_interval_seconds: float = Field(default=30.0, gt=0.0)
    stale_after_seconds: float = Field(default=300.0, gt=0.0)
    clear_on_startup: bool = False


class PersistenceConfig(_FrozenModel):
    """Snapshot and journal locations plus retry policy."""

    data_dir: Path = Field(default=Path("./data"))
    positions_file: str = Field(default="positions.snapshot")
    analytics_file: str = Field(default="analytics.snapshot")
    journal_dir: Path = Field(default=Path("./logs"))
    max_journal_bytes: int = Field(default=100 * 1024 * 1024, ge=1_024)
    max_write_attempts: int = Field(default=5, ge=1)
    retry_backoff_min_seconds: float = Field(default=0.1, ge=0.0)
    retry_backoff_max_seconds: float = Field(default=5.0, ge=0.0)
    latency_sample_cap: int = Field(default=1_000, ge=1)

    @property
    def positions_path(self) -> Path:
        return self.data_dir / self.positions_file

    @property
    def analytics_path(self) -> Path:
        return self.data_dir / self.analytics_file


class RegistryConfig(_FrozenModel):
    """Token registry housekeeping (seconds)."""

    sweep_interval_seconds: float = Field(default=60.0, ge=0.0)
    inactivity_timeout_seconds: float = Field(default=1_800.0, gt=0.0)
    duplicate_window: int = Field(default=256, ge=1)


class FeedConfig(_FrozenModel):
    """Upstream feed adapter and inbound queue settings."""

    url: str = Field(default="wss://pumpportal.fun/api/data")
    max_queue_size: int = Field(default=10_000, ge=1)
    reconnect_delay_seconds: float = Field(default=5.0, ge=0.0)
    max_reconnect_delay_seconds: float = Field(default=60.0, ge=0.0)
    ping_interval_seconds: float = Field(default=30.0, gt=0.0)
    shutdown_deadline_seconds: float = Field(default=10.0, ge=0.0)


class SolPriceConfig(_FrozenModel):
    """SOL/USD valuation source."""

    static_price_usd: Optional[float] = Field(default=None, gt=0.0)
    fallback_price_usd: Optional[float] = Field(default=150.0, gt=0.0)
    price_url: AnyHttpUrl = Field(
        default="https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
    )
    refresh_interval_seconds: float = Field(default=60.0, gt=0.0)
    http_timeout: float = Field(default=10.0, ge=1.0, le=45.0)


class MonitoringConfig(_FrozenModel):
    """Logging and alerting configuration."""

    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = None
    max_log_bytes: int = Field(default=50 * 1024 * 1024, ge=1_024)
    slack_webhook_url: Optional[AnyHttpUrl] = None
    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    alert_throttle_seconds: int = Field(default=60, ge=0)
    event_history_size: int = Field(default=500, ge=1)
    max_hist_samples: int = Field(default=1_000, ge=1)


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    position: PositionConfig = Field(default_factory=PositionConfig)
    exit_strategies: ExitStrategiesConfig = Field(default_factory=ExitStrategiesConfig)
    transaction: TransactionConfig = Field(default_factory=TransactionConfig)
    position_manager: PositionManagerConfig = Field(default_factory=PositionManagerConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    sol_price: SolPriceConfig = Field(default_factory=SolPriceConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )


def risk_adjusted(config: AppConfig, factor: float) -> AppConfig:
    """Return a copy of ``config`` with risk scaled by ``factor``.

    ``factor`` above 1.0 loosens the stop-loss, stretches take-profit targets and
    raises position limits; below 1.0 tightens them.
    """

    if factor <= 0:
        raise ValueError("risk factor must be positive")
    exits = config.exit_strategies
    stop_loss = exits.stop_loss.model_copy(
        update={"threshold_pct": min(exits.stop_loss.threshold_pct * factor, 100.0)}
    )
    tiers = [
        tier.model_copy(update={"threshold_pct": tier.threshold_pct * factor})
        for tier in exits.take_profit.tiers
    ]
    take_profit = exits.take_profit.model_copy(update={"tiers": tiers})
    position = config.position.model_copy(
        update={
            "min_position_size_sol": config.position.min_position_size_sol * factor,
            "max_position_size_sol": config.position.max_position_size_sol * factor,
        }
    )
    return config.model_copy(
        update={
            "exit_strategies": exits.model_copy(
                update={"stop_loss": stop_loss, "take_profit": take_profit}
            ),
            "position": position,
        }
    )


@dataclass(frozen=True, slots=True)
class ConfigRevision:
    """A configuration value that was replaced at runtime."""

    config: AppConfig
    replaced_at: datetime
    reason: str


ConfigListener = Callable[[AppConfig, AppConfig], None]


class ConfigStore:
    """Holds the active immutable configuration and its replacement history."""

    def __init__(self, config: AppConfig, *, history_size: int = 20) -> None:
        self._current = config
        self._history: Deque[ConfigRevision] = deque(maxlen=history_size)
        self._listeners: List[ConfigListener] = []
        self._lock = threading.RLock()

    @property
    def current(self) -> AppConfig:
        return self._current

    def history(self) -> List[ConfigRevision]:
        with self._lock:
            return list(self._history)

    def subscribe(self, listener: ConfigListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def apply_new_config(self, config: AppConfig, *, reason: str = "manual") -> AppConfig:
        """Swap in ``config`` and return the value it replaced."""

        with self._lock:
            previous = self._current
            self._history.append(
                ConfigRevision(config=previous, replaced_at=datetime.now(timezone.utc), reason=reason)
            )
            self._current = config
            listeners = list(self._listeners)
        for listener in listeners:
            listener(previous, config)
        return previous

    def rollback(self) -> AppConfig:
        """Restore the most recently replaced configuration."""

        with self._lock:
            if not self._history:
                raise LookupError("no configuration revision to roll back to")
            revision = self._history.pop()
            replaced = self._current
            self._current = revision.config
            listeners = list(self._listeners)
        for listener in listeners:
            listener(replaced, revision.config)
        return revision.config


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "AppMode",
    "ConfigRevision",
    "ConfigStore",
    "ExitStrategiesConfig",
    "FeedConfig",
    "MissedOpportunityConfig",
    "ModeConfig",
    "MonitoringConfig",
    "NetworkDelayConfig",
    "PersistenceConfig",
    "PositionConfig",
    "PositionManagerConfig",
    "PriceImpactConfig",
    "PumpDetectionConfig",
    "RegistryConfig",
    "SafetyConfig",
    "SimulationModeConfig",
    "SolPriceConfig",
    "StopLossConfig",
    "TakeProfitConfig",
    "TakeProfitTier",
    "ThresholdsConfig",
    "TimeExitConfig",
    "TraderAnalysisConfig",
    "TrailingStopConfig",
    "TransactionConfig",
    "VolumeExitConfig",
    "WalletConfig",
    "get_app_config",
    "risk_adjusted",
]
