"""
Durable SQLite stores for analyses, monitoring jobs and pending brackets.
"""
from .analysis_store import Analysis, AnalysisStore, OrderRecord, OrderStatus

__all__ = ["Analysis", "AnalysisStore", "OrderRecord", "OrderStatus"]
