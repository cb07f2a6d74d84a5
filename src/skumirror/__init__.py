"""
skumirror - local mirror cache for inventory item photos.

Lets the inventory UI render photos referenced by external URLs while
materializing durable local copies in the background.
"""

__version__ = "0.1.0"
