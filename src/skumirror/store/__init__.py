"""
Durable key-addressed byte storage.
"""

from skumirror.store.local import LocalStore

__all__ = ["LocalStore"]
