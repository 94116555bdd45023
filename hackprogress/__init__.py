"""hackprogress - Prerequisite-graph progression and unlock engine."""

__version__ = "0.1.0"
