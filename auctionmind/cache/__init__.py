"""Filter canonicalization and the analysis result cache."""
