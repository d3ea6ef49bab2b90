"""
Feed write path.
"""

from .publisher import FeedPublisher, IngestResult

__all__ = ["FeedPublisher", "IngestResult"]
