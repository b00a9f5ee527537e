"""
Base interface for the sample store consumed by the evaluator.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from hostwatch.samples.models import Host


class BaseSampleStore(ABC):
    """Abstract read interface over hosts and append-only metric rows"""

    @abstractmethod
    def get_hosts(self) -> List[Host]:
        """
        Get every known host.

        Returns:
            List of Host instances ordered by uuid
        """
        pass

    @abstractmethod
    def get_host(self, uuid: str) -> Optional[Host]:
        """
        Get a host by uuid.

        Returns:
            Host instance or None if unknown
        """
        pass

    @abstractmethod
    def get_recent_samples(self, table: str, host_uuid: str,
                           window_seconds: int = 0) -> List[Any]:
        """
        Get the most recent rows of a sample table for one host.

        Args:
            table: Sample table name (aliases accepted)
            host_uuid: Host the rows belong to
            window_seconds: How far back from the newest row to read.
                0 returns only the latest capture (rows sharing the newest
                created_at).

        Returns:
            Sample rows ordered by created_at ascending
        """
        pass

    def close(self) -> None:
        """Release resources held by the store"""
        pass
