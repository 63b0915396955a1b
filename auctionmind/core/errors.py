"""
Error taxonomy for the analysis core.

Component-local failures (cache, refresh, insight writer) are converted into
degraded outcomes by the orchestrator; only a record-source failure with no
usable local data reaches the caller as RecordSourceUnavailableError.
"""


class AuctionMindError(RuntimeError):
    """Base class for all analysis-core errors."""


class TransientUpstreamError(AuctionMindError):
    """Raised when the record or refresh source is unavailable or times out."""


class FilterCanonicalizationError(AuctionMindError, ValueError):
    """Raised when a filter cannot be turned into a stable identity."""


class MalformedFilterError(AuctionMindError, ValueError):
    """Raised when a filter cannot be interpreted at all (client error)."""


class PersistenceUnavailableError(AuctionMindError):
    """Raised by cache and pattern backends when storage is unreachable."""


class InsightWriterError(AuctionMindError):
    """Raised when the prose insight writer fails."""


class RecordSourceUnavailableError(AuctionMindError):
    """Raised when no records can be fetched and no cached result exists."""


class AnalysisCancelledError(AuctionMindError):
    """Raised when a caller cancels an in-flight analysis."""
