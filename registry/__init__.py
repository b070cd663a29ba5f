"""
Service registry for Harbormaster.
"""

from .store import (
    Registry, DeploymentRecord, StoreUnavailable,
    format_instance, parse_instance, env_key
)

__all__ = [
    'Registry', 'DeploymentRecord', 'StoreUnavailable',
    'format_instance', 'parse_instance', 'env_key'
]
