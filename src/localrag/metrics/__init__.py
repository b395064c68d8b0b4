"""Logging and metrics."""

from .observability import PipelineMetrics, configure_logging, get_logger

__all__ = ["PipelineMetrics", "configure_logging", "get_logger"]
