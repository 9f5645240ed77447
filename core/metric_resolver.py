"""
Resolve business metric names to metric ids.

The metric list is fetched once per report and kept only on the
resolver instance; a new report builds a new resolver.
"""
from typing import Iterable, List, Optional

from core.models import Metric
from core.observability import get_logger

logger = get_logger(__name__)


class MetricResolver:
    """
    Name -> id lookup over the account's metric definitions.

    Matching order for a name:
        1. exact, case-sensitive
        2. exact, case-insensitive
        3. case-insensitive substring of the metric name

    A name with no match resolves to None; that is not an error.
    """

    def __init__(self, metrics: Iterable[Metric]):
        self.metrics: List[Metric] = list(metrics)

    @classmethod
    async def load(cls, client) -> "MetricResolver":
        """Fetch the metric list through a KlaviyoClient."""
        metrics = await client.get_metrics()
        logger.info(f"Loaded {len(metrics)} metric definitions")
        return cls(metrics)

    def find(self, name: str) -> Optional[Metric]:
        if not name:
            return None

        for metric in self.metrics:
            if metric.name == name:
                return metric

        wanted = name.lower()
        for metric in self.metrics:
            if metric.name.lower() == wanted:
                return metric

        for metric in self.metrics:
            if wanted in metric.name.lower():
                return metric

        return None

    def resolve(self, name: str) -> Optional[str]:
        """Metric id for a canonical name, or None."""
        metric = self.find(name)
        return metric.id if metric else None

    def resolve_any(self, names: Iterable[str]) -> Optional[str]:
        """First id resolved from a list of alternative names."""
        for name in names:
            metric_id = self.resolve(name)
            if metric_id:
                return metric_id
        return None
