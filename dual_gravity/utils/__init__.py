"""
Utilities Module

Logging configuration helpers.
"""

from .logging_config import get_logger, log_performance, set_request_context, setup_logging

__all__ = ["get_logger", "log_performance", "set_request_context", "setup_logging"]
