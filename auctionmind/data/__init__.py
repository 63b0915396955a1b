"""Sale records, record stores and the freshness gate."""
