"""Utility helper functions"""

import re
import socket
import platform

INTERVAL_UNITS = {
    's': 1, 'sec': 1, 'second': 1, 'seconds': 1,
    'm': 60, 'min': 60, 'minute': 60, 'minutes': 60,
    'h': 3600, 'hour': 3600, 'hours': 3600,
    'd': 86400, 'day': 86400, 'days': 86400,
}

_INTERVAL_RE = re.compile(r'^\s*(\d+)\s*([a-zA-Z]+)\s*$')


def get_hostname():
    """Get system hostname"""
    try:
        return socket.gethostname()
    except OSError:
        return platform.node() or "unknown"


def parse_interval(text):
    """
    Parse an interval such as '30s', '10m', '1h', '2d' or '10 minutes'.

    Returns:
        Number of seconds

    Raises:
        ValueError: If the interval is not understood
    """
    match = _INTERVAL_RE.match(str(text))
    if not match:
        raise ValueError(f"Invalid interval: {text!r}")

    amount, unit = match.groups()
    multiplier = INTERVAL_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Invalid interval unit {unit!r} in {text!r}")

    return int(amount) * multiplier
