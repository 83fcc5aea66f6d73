"""
API Metrics Tracking Module

Collects and emits structured logging of search API usage for one sync run.

RunMetrics keeps counters for:
  - total API requests made:      calls to the Places searchNearby endpoint
  - results returned by the API:  raw results across all cells, before filtering
  - unique results retained:      distinct places after deduplication
  - failed requests:              attempts that raised a search error

The efficiency ratio (unique / returned) shows how much overlap the grid produces;
a low ratio on a dense core means subdivision is mostly re-reading the same shops.
"""

from .logger import logger


class RunMetrics:
    """Track API usage metrics for a single run"""
    def __init__(self, run_id: str = ""):
        self.run_id: str = run_id
        self.total_requests: int = 0
        self.results_returned: int = 0
        self.unique_results: int = 0
        self.failed_requests: int = 0

    def efficiency_ratio(self) -> float:
        return round(self.unique_results / max(1, self.results_returned), 2)

    def as_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "results_returned": self.results_returned,
            "unique_results": self.unique_results,
            "failed_requests": self.failed_requests,
            "efficiency_ratio": self.efficiency_ratio(),
        }

    def log_metrics(self):
        """Log current API metrics"""
        logger.info("API Metrics Summary", extra={
            "operation": "api_metrics",
            "run_id": self.run_id,
            "metrics": self.as_dict(),
        })
