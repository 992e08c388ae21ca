"""
Services module for the retrieval core.
"""

from .logging_service import setup_logging, get_logger, log_performance_metrics

__all__ = ["setup_logging", "get_logger", "log_performance_metrics"]
