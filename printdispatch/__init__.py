"""
printdispatch - durable per-printer print job dispatcher
"""

__version__ = "1.0.0"
