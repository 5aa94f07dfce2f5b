"""
HTTP API for Try-On Core.

Exposes job creation, job status, worker callbacks and consumption.
"""

from .app import create_app

__all__ = ["create_app"]
