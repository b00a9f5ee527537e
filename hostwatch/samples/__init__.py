"""
Read side of the sample store (hosts and metric rows).
"""

from hostwatch.samples.models import Host, SAMPLE_TYPES, resolve_table, fields_of
from hostwatch.samples.base_store import BaseSampleStore

__all__ = ['Host', 'SAMPLE_TYPES', 'resolve_table', 'fields_of', 'BaseSampleStore']
