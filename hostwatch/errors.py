"""
Exceptions shared across hostwatch modules.
"""


class ValidationError(ValueError):
    """Invalid alert rule definition or update"""


class SampleError(Exception):
    """Sample rows are missing or malformed for a rule"""


class StorageError(Exception):
    """Sample store or incident storage failure"""


class DuplicateOpenIncident(StorageError):
    """An open incident already exists for the rule and host"""
