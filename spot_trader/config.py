"""Configuration loader for the trading engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Dict

import yaml

CAPITAL_POLICIES = ("static", "net_of_exposure")


def _default_token_ids() -> Dict[str, str]:
    return {"USDC": "usd-coin", "HYPE": "hyperliquid"}


@dataclass
class MarketDataConfig:
    """Token universe and price history providers."""
    info_url: str = "https://api.hyperliquid.xyz/info"
    price_url: str = "https://api.coingecko.com/api/v3"
    vs_currency: str = "usd"
    lookback_days: int = 7
    metadata_ttl_seconds: float = 300.0
    timeout: int = 10
    requests_per_minute: int = 30
    # venue token name -> price provider coin id
    token_ids: Dict[str, str] = field(default_factory=_default_token_ids)


@dataclass
class AdvisoryConfig:
    """Reasoning service settings."""
    base_url: str = "https://api.x.ai/v1"
    model: str = "grok-3"
    max_tokens: int = 1500
    timeout: float = 60.0
    max_price_points: int = 168


@dataclass
class VenueConfig:
    """Execution venue settings."""
    base_url: str = "https://api.hyperliquid.xyz"
    timeout: int = 10
    market_orders: bool = False
    orders_per_second: int = 5


@dataclass
class StrategyConfig:
    """Scheduling and sizing parameters."""
    interval_seconds: float = 60.0
    error_retry_seconds: float = 15.0
    capital: Decimal = Decimal("1000")
    fixed_fraction: Decimal = Decimal("0.01")  # 1% of capital per position
    capital_policy: str = "static"
    max_concurrency: int = 4
    token_timeout_seconds: float = 180.0


@dataclass
class PersistenceConfig:
    """Ledger and log file settings."""
    db_path: str = "state/trades.db"
    log_file: str = "logs/spot_trader.log"
    log_level: str = "INFO"


@dataclass
class ServerConfig:
    """Administrative HTTP surface."""
    host: str = "0.0.0.0"
    port: int = 3000
    autostart_loop: bool = True


@dataclass
class TradingConfig:
    """Complete engine configuration."""
    market_data: MarketDataConfig
    advisory: AdvisoryConfig
    venue: VenueConfig
    strategy: StrategyConfig
    persistence: PersistenceConfig
    server: ServerConfig

    def __post_init__(self):
        self.validate()

    @classmethod
    def default(cls) -> "TradingConfig":
        return cls(
            market_data=MarketDataConfig(),
            advisory=AdvisoryConfig(),
            venue=VenueConfig(),
            strategy=StrategyConfig(),
            persistence=PersistenceConfig(),
            server=ServerConfig(),
        )

    def validate(self) -> None:
        """Raise ValueError on settings the engine cannot run with."""
        s = self.strategy
        if s.interval_seconds <= 0:
            raise ValueError("strategy.interval_seconds must be positive")
        if s.error_retry_seconds <= 0:
            raise ValueError("strategy.error_retry_seconds must be positive")
        if not (Decimal("0") < s.fixed_fraction <= Decimal("1")):
            raise ValueError("strategy.fixed_fraction must be in (0, 1]")
        if s.capital < 0:
            raise ValueError("strategy.capital must not be negative")
        if s.capital_policy not in CAPITAL_POLICIES:
            raise ValueError(
                f"strategy.capital_policy must be one of {CAPITAL_POLICIES}, got {s.capital_policy!r}"
            )
        if s.max_concurrency < 1:
            raise ValueError("strategy.max_concurrency must be at least 1")
        if self.market_data.lookback_days < 1:
            raise ValueError("market_data.lookback_days must be at least 1")

    @classmethod
    def from_yaml(cls, config_path: str) -> "TradingConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            TradingConfig instance

        Example YAML:
            strategy:
              interval_seconds: 60
              capital: 1000
              fixed_fraction: 0.01
            persistence:
              db_path: "${STATE_DIR}/trades.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        market_data = MarketDataConfig(**data.get("market_data", {}))
        strategy = StrategyConfig(**{
            k: Decimal(str(v)) if k in ("capital", "fixed_fraction") else v
            for k, v in data.get("strategy", {}).items()
        })

        return cls(
            market_data=market_data,
            advisory=AdvisoryConfig(**data.get("advisory", {})),
            venue=VenueConfig(**data.get("venue", {})),
            strategy=strategy,
            persistence=PersistenceConfig(**data.get("persistence", {})),
            server=ServerConfig(**data.get("server", {})),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "market_data": asdict(self.market_data),
            "advisory": asdict(self.advisory),
            "venue": asdict(self.venue),
            "strategy": {
                **asdict(self.strategy),
                "capital": str(self.strategy.capital),
                "fixed_fraction": str(self.strategy.fixed_fraction),
            },
            "persistence": asdict(self.persistence),
            "server": asdict(self.server),
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
