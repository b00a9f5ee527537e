"""
hostwatch - alert evaluation and incident lifecycle engine for host telemetry.
"""

__version__ = '1.0.0'
