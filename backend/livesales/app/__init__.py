"""HTTP application, services and configuration for the auth service."""
from .logging import setup_logging

__all__ = ["setup_logging"]
