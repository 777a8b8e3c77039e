"""HTTP API for the flow engine"""

from .app import app

__all__ = ["app"]
