"""
Configuration management for AuctionMind.

Loads settings from YAML config file and provides typed access.
"""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from auctionmind.cache import cache_policy


def _project_root() -> Path:
    """Return project root (parent of auctionmind package)."""
    return Path(__file__).resolve().parent.parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


@dataclass
class AuctionMindConfig:
    """Configuration for the analysis core."""

    # Storage
    backend: str = "memory"                       # "memory" or "sql"
    database_url: str = "sqlite:///data/auctionmind.db"

    # Result cache
    cache_validity_minutes: int = cache_policy.DEFAULT_VALIDITY_MINUTES
    cache_retention_days: int = cache_policy.DEFAULT_RETENTION_DAYS

    # Freshness / refresh
    freshness_window_days: float = cache_policy.DEFAULT_FRESHNESS_WINDOW_DAYS
    refresh_tiers: Tuple[str, ...] = ("gold", "platinum", "admin")
    refresh_timeout_seconds: float = 10.0

    # Record sampling
    fetch_timeout_seconds: float = 15.0
    sample_cap_standard: int = 15000
    sample_cap_comprehensive: int = 25000

    # Opportunity detection (minimum partition volume per dimension)
    min_volume_damage: int = 50
    min_volume_location: int = 30
    min_volume_make: int = 20
    min_volume_make_year: int = 20
    min_volume_keys: int = 20                     # per group: with keys and without
    low_risk_min_volume: int = 20

    # Trend detection
    trend_min_bucket_size: int = 10
    trend_min_buckets: int = 3

    # Confidence
    confidence_cap: float = 0.95
    high_confidence_threshold: float = 0.7
    confidence_boost: float = 0.05

    # Pattern maintenance
    decay_after_days: int = cache_policy.DEFAULT_DECAY_AFTER_DAYS
    decay_factor: float = cache_policy.DEFAULT_DECAY_FACTOR
    prune_after_days: int = cache_policy.DEFAULT_PRUNE_AFTER_DAYS
    prune_below_confidence: float = cache_policy.DEFAULT_PRUNE_BELOW_CONFIDENCE

    # Insight writer
    insights_enabled: bool = False
    insight_model: str = "gpt-4o"
    insight_timeout_seconds: float = 20.0

    # Worker pool for bounded I/O
    max_workers: int = 8

    # Logging (None: AUCTIONMIND_LOG_LEVEL / LOG_LEVEL environment)
    log_level: Optional[str] = None

    @property
    def cache_validity(self) -> timedelta:
        return timedelta(minutes=self.cache_validity_minutes)

    @property
    def cache_retention(self) -> timedelta:
        return timedelta(days=self.cache_retention_days)

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(days=self.freshness_window_days)

    def sample_cap(self, analysis_type: str) -> int:
        """Return the record sample cap for an analysis type."""
        if str(analysis_type) == "comprehensive":
            return self.sample_cap_comprehensive
        return self.sample_cap_standard

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "AuctionMindConfig":
        """Load configuration from YAML file."""
        path = config_path or DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls._apply_env(cls())

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        storage_config = data.get('storage', {})
        cache_config = data.get('cache', {})
        freshness_config = data.get('freshness', {})
        analysis_config = data.get('analysis', {})
        opportunity_config = analysis_config.get('opportunity', {})
        trend_config = analysis_config.get('trend', {})
        confidence_config = analysis_config.get('confidence', {})
        learning_config = data.get('learning', {})
        insights_config = data.get('insights', {})

        defaults = cls()
        config = cls(
            backend=storage_config.get('backend', defaults.backend),
            database_url=storage_config.get('database_url', defaults.database_url),
            cache_validity_minutes=cache_config.get('validity_minutes', defaults.cache_validity_minutes),
            cache_retention_days=cache_config.get('retention_days', defaults.cache_retention_days),
            freshness_window_days=freshness_config.get('window_days', defaults.freshness_window_days),
            refresh_tiers=tuple(t.lower() for t in freshness_config.get('refresh_tiers', defaults.refresh_tiers)),
            refresh_timeout_seconds=freshness_config.get('refresh_timeout_seconds', defaults.refresh_timeout_seconds),
            fetch_timeout_seconds=analysis_config.get('fetch_timeout_seconds', defaults.fetch_timeout_seconds),
            sample_cap_standard=analysis_config.get('sample_cap_standard', defaults.sample_cap_standard),
            sample_cap_comprehensive=analysis_config.get('sample_cap_comprehensive', defaults.sample_cap_comprehensive),
            min_volume_damage=opportunity_config.get('min_volume_damage', defaults.min_volume_damage),
            min_volume_location=opportunity_config.get('min_volume_location', defaults.min_volume_location),
            min_volume_make=opportunity_config.get('min_volume_make', defaults.min_volume_make),
            min_volume_make_year=opportunity_config.get('min_volume_make_year', defaults.min_volume_make_year),
            min_volume_keys=opportunity_config.get('min_volume_keys', defaults.min_volume_keys),
            low_risk_min_volume=opportunity_config.get('low_risk_min_volume', defaults.low_risk_min_volume),
            trend_min_bucket_size=trend_config.get('min_bucket_size', defaults.trend_min_bucket_size),
            trend_min_buckets=trend_config.get('min_buckets', defaults.trend_min_buckets),
            confidence_cap=confidence_config.get('cap', defaults.confidence_cap),
            high_confidence_threshold=confidence_config.get('high_threshold', defaults.high_confidence_threshold),
            confidence_boost=confidence_config.get('boost', defaults.confidence_boost),
            decay_after_days=learning_config.get('decay_after_days', defaults.decay_after_days),
            decay_factor=learning_config.get('decay_factor', defaults.decay_factor),
            prune_after_days=learning_config.get('prune_after_days', defaults.prune_after_days),
            prune_below_confidence=learning_config.get('prune_below_confidence', defaults.prune_below_confidence),
            insights_enabled=insights_config.get('enabled', defaults.insights_enabled),
            insight_model=insights_config.get('model', defaults.insight_model),
            insight_timeout_seconds=insights_config.get('timeout_seconds', defaults.insight_timeout_seconds),
            max_workers=data.get('max_workers', defaults.max_workers),
            log_level=data.get('logging', {}).get('level', defaults.log_level),
        )
        return cls._apply_env(config)

    @staticmethod
    def _apply_env(config: "AuctionMindConfig") -> "AuctionMindConfig":
        """Environment overrides for deployment-specific settings."""
        database_url = os.getenv("DATABASE_URL")
        if database_url:
            config.database_url = database_url
        backend = os.getenv("AUCTIONMIND_BACKEND")
        if backend:
            config.backend = backend.lower()
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Flat view used for logging the effective configuration."""
        return {k: v for k, v in self.__dict__.items() if k != "database_url"}


# Global config instance
_config: Optional[AuctionMindConfig] = None


def get_config() -> AuctionMindConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AuctionMindConfig.from_yaml()
    return _config


def set_config(config: AuctionMindConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
