"""
Metrics collection and export for Harbormaster.
"""

from .exporter import MetricsExporter

__all__ = ['MetricsExporter']
