"""
AuctionMind - analysis caching and pattern learning for auction sale data

Produces market analyses over historical sale records with:
- Result caching keyed by canonical filters
- Tier-gated freshness refreshes
- Confidence-weighted pattern learning
"""

from auctionmind.core.orchestrator import (
    AnalysisOrchestrator,
    AnalysisResponse,
    CancellationToken,
    build_orchestrator,
)
from auctionmind.core.config import AuctionMindConfig, get_config, set_config

__all__ = [
    'AnalysisOrchestrator',
    'AnalysisResponse',
    'CancellationToken',
    'build_orchestrator',
    'AuctionMindConfig',
    'get_config',
    'set_config',
]

__version__ = '0.1.0'
