"""
Tokenwire - authentication token observer for a single monitored browsing context
"""

__version__ = "0.1.0"
