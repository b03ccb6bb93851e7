"""
API Module - Status API for a Transfer Server

Provides HTTP endpoints for watching and cancelling transfers.
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
