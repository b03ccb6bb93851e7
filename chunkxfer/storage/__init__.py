"""
Storage Module - Persistent Resume State

Uses SQLite for storing per-transfer progress so interrupted transfers
can resume after a reconnect or a restart.
"""

from .database import Database, init_database

__all__ = ['Database', 'init_database']
