"""
Per-credential usage recording.
"""

from .recorder import UsageRecorder, aggregate_usage, empty_stats

__all__ = ["UsageRecorder", "aggregate_usage", "empty_stats"]
