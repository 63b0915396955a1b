"""
Analysis caching policy: what gets cached, for how long, and when it is swept.

Architecture:
  sales_history    → source of truth for sale records (read-only to this core)
  analysis_cache   → append-only result cache (most recent entry per identity wins)
  learned_patterns → confidence-weighted knowledge shared by every analysis

Validity and retention are two different clocks. A cached analysis is served
as a hit only while it is younger than the validity window; it stays in the
table (as history, and as a stale fallback when the record source is down)
until the retention sweep deletes it.
"""

# ────────────────────────────────────────────────────────────────────────────
# Cache Policy Table
# ────────────────────────────────────────────────────────────────────────────
#
# Concern            | Default  | Applied by
# -------------------+----------+----------------------------------------------
# Validity window    | 30 min   | ResultCache.get(max_age=...) on every request
# Retention age      | 30 days  | ResultCache.purge_older_than() on a schedule
# Freshness window   | 3 days   | FreshnessGate.is_fresh() per market segment
# Pattern decay      | 14 days  | PatternStore.decay() (explicit maintenance)
# Pattern prune      | 7 days   | PatternStore.prune() with confidence < 0.6
#
# ────────────────────────────────────────────────────────────────────────────
# Consistency Expectations
# ────────────────────────────────────────────────────────────────────────────
#
# - Two concurrent requests for the same identity may both miss and both
#   compute. Both results are appended; reads return the newest.
# - The payload of an entry is write-once. Only access_count and
#   last_accessed_at change after insert.
# - Retention sweeps are not run on the request path.

DEFAULT_VALIDITY_MINUTES = 30
DEFAULT_RETENTION_DAYS = 30
DEFAULT_FRESHNESS_WINDOW_DAYS = 3
DEFAULT_DECAY_AFTER_DAYS = 14
DEFAULT_DECAY_FACTOR = 0.9
DEFAULT_PRUNE_AFTER_DAYS = 7
DEFAULT_PRUNE_BELOW_CONFIDENCE = 0.6

# Window used by CacheStats.recently_accessed
RECENT_ACCESS_HOURS = 24
