"""
API Routes Package
"""
from . import health, provisioning

__all__ = ["health", "provisioning"]
