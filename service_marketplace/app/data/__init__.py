"""
Data retrieval layer of the marketplace gateway.
"""

from .service import DataRetrievalService, DataResult

__all__ = ["DataRetrievalService", "DataResult"]
