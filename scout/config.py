"""
Scout Engine Configuration

Every tunable of the decision engine lives in one dataclass tree:

    EngineConfig
    ├── regime      RegimeConfig      (classifier + transition learning)
    ├── predictor   PredictorConfig   (online network)
    ├── policy      PolicyConfig      (tabular Q-learning)
    ├── fusion      FusionConfig      (strategy chain + confidence calibration)
    ├── indicators  IndicatorConfig   (candle -> observation)
    └── validation  ValidationConfig  (backtest / Monte Carlo / forward test)

Values are validated in __post_init__ so a bad config.yaml fails at start-up,
never in the middle of a scheduler tick.

Usage:
    config = load_config()                       # config.yaml if present, else defaults
    config = EngineConfig.load_from_yaml("prod.yaml")   # strict
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

# Rows: from-state, columns: to-state (TRENDING, RANGING, VOLATILE, CHAOTIC)
DEFAULT_TRANSITION_MATRIX = [
    [0.70, 0.20, 0.08, 0.02],
    [0.15, 0.75, 0.08, 0.02],
    [0.10, 0.15, 0.65, 0.10],
    [0.05, 0.10, 0.35, 0.50],
]

ADX_MODES = ("dx", "wilder")


class ConfigError(Exception):
    """Raised when engine configuration is invalid or unreadable."""
    pass


def _raise_if(errors: List[str], section: str):
    if errors:
        raise ConfigError(f"Invalid {section} config: " + "; ".join(errors))


@dataclass
class RegimeConfig:
    """Regime classifier settings."""
    history_size: int = 100
    learn_min_history: int = 20
    learn_alpha: float = 0.1
    stability_window: int = 10
    transition_matrix: List[List[float]] = field(
        default_factory=lambda: [row[:] for row in DEFAULT_TRANSITION_MATRIX]
    )

    def __post_init__(self):
        errors = []
        if self.history_size <= 0:
            errors.append(f"history_size must be > 0, got {self.history_size}")
        if self.learn_min_history < 2:
            errors.append(f"learn_min_history must be >= 2, got {self.learn_min_history}")
        if not 0 < self.learn_alpha <= 1:
            errors.append(f"learn_alpha must be in (0, 1], got {self.learn_alpha}")
        if self.stability_window <= 0:
            errors.append(f"stability_window must be > 0, got {self.stability_window}")

        matrix = self.transition_matrix
        if len(matrix) != 4 or any(len(row) != 4 for row in matrix):
            errors.append("transition_matrix must be 4x4")
        else:
            for i, row in enumerate(matrix):
                if any(p < 0 for p in row):
                    errors.append(f"transition_matrix row {i} has negative entries")
                if abs(sum(row) - 1.0) > 1e-6:
                    errors.append(f"transition_matrix row {i} sums to {sum(row):.6f}, expected 1")
        _raise_if(errors, "regime")


@dataclass
class PredictorConfig:
    """Online network settings."""
    learning_rate: float = 0.001
    epochs: int = 10
    retrain_interval: int = 50
    buffer_size: int = 500
    min_samples: int = 20
    init_scale: float = 0.1
    persist_weights: bool = False

    def __post_init__(self):
        errors = []
        if self.learning_rate <= 0:
            errors.append(f"learning_rate must be > 0, got {self.learning_rate}")
        if self.epochs <= 0:
            errors.append(f"epochs must be > 0, got {self.epochs}")
        if self.retrain_interval <= 0:
            errors.append(f"retrain_interval must be > 0, got {self.retrain_interval}")
        if self.buffer_size <= 0:
            errors.append(f"buffer_size must be > 0, got {self.buffer_size}")
        if not 0 < self.min_samples <= self.buffer_size:
            errors.append(f"min_samples must be in (0, buffer_size], got {self.min_samples}")
        if self.init_scale <= 0:
            errors.append(f"init_scale must be > 0, got {self.init_scale}")
        _raise_if(errors, "predictor")


@dataclass
class PolicyConfig:
    """Q-learning settings."""
    alpha: float = 0.1
    gamma: float = 0.9
    epsilon: float = 0.15
    initial_q: float = 0.5
    history_size: int = 500
    tie_margin: float = 0.1
    min_updates: int = 10

    def __post_init__(self):
        errors = []
        if not 0 < self.alpha <= 1:
            errors.append(f"alpha must be in (0, 1], got {self.alpha}")
        if not 0 <= self.gamma < 1:
            errors.append(f"gamma must be in [0, 1), got {self.gamma}")
        if not 0 <= self.epsilon <= 1:
            errors.append(f"epsilon must be in [0, 1], got {self.epsilon}")
        if self.history_size <= 0:
            errors.append(f"history_size must be > 0, got {self.history_size}")
        if self.tie_margin < 0:
            errors.append(f"tie_margin must be >= 0, got {self.tie_margin}")
        if self.min_updates < 0:
            errors.append(f"min_updates must be >= 0, got {self.min_updates}")
        _raise_if(errors, "policy")


@dataclass
class FusionConfig:
    """Strategy chain and confidence calibration settings."""
    # 0 disables the emission gate; 35 reproduces the legacy behaviour
    min_confidence: int = 0
    override_confidence: int = 60
    policy_confidence: int = 55
    threshold_confidence: int = 50
    random_confidence: int = 45
    min_output_confidence: int = 30
    max_output_confidence: int = 95
    max_reasons: int = 10
    high_clustering: float = 1.5
    low_clustering: float = 0.7
    strategies: List[str] = field(
        default_factory=lambda: ["predictor", "policy", "indicator_fallback"]
    )

    def __post_init__(self):
        errors = []
        if not 0 <= self.min_confidence <= 100:
            errors.append(f"min_confidence must be in [0, 100], got {self.min_confidence}")
        if self.min_output_confidence >= self.max_output_confidence:
            errors.append(
                f"min_output_confidence ({self.min_output_confidence}) must be below "
                f"max_output_confidence ({self.max_output_confidence})"
            )
        if self.max_reasons <= 0:
            errors.append(f"max_reasons must be > 0, got {self.max_reasons}")
        if self.low_clustering >= self.high_clustering:
            errors.append("low_clustering must be below high_clustering")
        if not self.strategies:
            errors.append("strategies must name at least one strategy")
        elif self.strategies[-1] != "indicator_fallback":
            errors.append("strategies must end with 'indicator_fallback'")
        _raise_if(errors, "fusion")


@dataclass
class IndicatorConfig:
    """Candle -> indicator settings."""
    rsi_period: int = 14
    atr_period: int = 14
    adx_period: int = 14
    cci_period: int = 20
    williams_period: int = 14
    avg_price_period: int = 20
    clustering_short: int = 5
    clustering_long: int = 20
    adx_mode: str = "dx"
    default_tick_frequency: float = 1.0
    default_spread: float = 0.0001

    def __post_init__(self):
        errors = []
        for name in ("rsi_period", "atr_period", "adx_period", "cci_period",
                     "williams_period", "avg_price_period",
                     "clustering_short", "clustering_long"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0, got {getattr(self, name)}")
        if self.clustering_short >= self.clustering_long:
            errors.append("clustering_short must be below clustering_long")
        if self.adx_mode not in ADX_MODES:
            errors.append(f"adx_mode must be one of {ADX_MODES}, got {self.adx_mode!r}")
        _raise_if(errors, "indicators")


@dataclass
class ValidationConfig:
    """Binary-outcome backtest settings."""
    stake: float = 10.0
    payout: float = 0.85
    start_balance: float = 1000.0
    monte_carlo_iterations: int = 100
    forward_test_period: int = 50

    def __post_init__(self):
        errors = []
        if self.stake <= 0:
            errors.append(f"stake must be > 0, got {self.stake}")
        if self.payout <= 0:
            errors.append(f"payout must be > 0, got {self.payout}")
        if self.start_balance <= 0:
            errors.append(f"start_balance must be > 0, got {self.start_balance}")
        if self.monte_carlo_iterations <= 0:
            errors.append(f"monte_carlo_iterations must be > 0, got {self.monte_carlo_iterations}")
        if self.forward_test_period <= 0:
            errors.append(f"forward_test_period must be > 0, got {self.forward_test_period}")
        _raise_if(errors, "validation")


SECTIONS = {
    "regime": RegimeConfig,
    "predictor": PredictorConfig,
    "policy": PolicyConfig,
    "fusion": FusionConfig,
    "indicators": IndicatorConfig,
    "validation": ValidationConfig,
}


@dataclass
class EngineConfig:
    """Top-level engine configuration."""
    warmup_candles: int = 50
    signal_history_size: int = 100
    db_path: Optional[str] = None
    seed: Optional[int] = None
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    def __post_init__(self):
        errors = []
        if self.warmup_candles <= 0:
            errors.append(f"warmup_candles must be > 0, got {self.warmup_candles}")
        if self.signal_history_size <= 0:
            errors.append(f"signal_history_size must be > 0, got {self.signal_history_size}")
        _raise_if(errors, "engine")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build from a parsed mapping. Unknown keys raise ConfigError."""
        data = dict(data or {})
        kwargs: Dict[str, Any] = {}

        for name, section_cls in SECTIONS.items():
            section = data.pop(name, None)
            if section is None:
                continue
            if not isinstance(section, dict):
                raise ConfigError(f"Section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls(**section)
            except TypeError as e:
                raise ConfigError(f"Invalid {name} config structure: {e}")

        engine = data.pop("engine", None) or {}
        if data:
            raise ConfigError(f"Unknown config sections: {sorted(data)}")
        if not isinstance(engine, dict):
            raise ConfigError("Section 'engine' must be a mapping")

        try:
            return cls(**engine, **kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid engine config structure: {e}")

    @classmethod
    def load_from_yaml(cls, path: str = DEFAULT_CONFIG_PATH) -> "EngineConfig":
        """
        Load engine settings from a YAML file.

        Raises ConfigError if the file is missing, can't be parsed,
        or holds invalid values.
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            with open(config_path, "r") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config {path}: {e}")

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {path}")

        return cls.from_dict(raw)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for logging."""
        return asdict(self)


def apply_env_overrides(config: EngineConfig) -> EngineConfig:
    """Apply SCOUT_* environment variables on top of file values."""
    db_path = os.getenv("SCOUT_DB_PATH")
    if db_path:
        config.db_path = db_path

    seed = os.getenv("SCOUT_SEED")
    if seed:
        try:
            config.seed = int(seed)
        except ValueError:
            raise ConfigError(f"SCOUT_SEED must be an integer, got {seed!r}")

    return config


def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load configuration for scripts and services.

    Resolution order: explicit path, SCOUT_CONFIG, ./config.yaml.
    An explicitly named file must exist; a missing default file means defaults.
    """
    load_dotenv()

    explicit = path or os.getenv("SCOUT_CONFIG")
    if explicit:
        config = EngineConfig.load_from_yaml(explicit)
    elif Path(DEFAULT_CONFIG_PATH).exists():
        config = EngineConfig.load_from_yaml(DEFAULT_CONFIG_PATH)
    else:
        logger.info("No config.yaml found, using built-in defaults")
        config = EngineConfig()

    return apply_env_overrides(config)

