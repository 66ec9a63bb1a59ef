# Test Case Generator - API Monitoring
import time
import dataclasses
from collections import defaultdict, deque
from datetime import datetime
from typing import Dict, Any, Optional
from uuid import uuid4

from .Functions_module import setup_logger

logger = setup_logger()


def _endpoint_bucket() -> Dict[str, Any]:
    return {"count": 0, "errors": 0, "total_time": 0.0, "avg_time": 0.0}


@dataclasses.dataclass
class APIMetrics:
    requests_total: int = 0
    requests_failed: int = 0
    requests_success: int = 0
    total_latency_ms: float = 0.0
    last_request_time: float = 0.0
    jobs_enqueued: int = 0
    documents_indexed: int = 0
    start_time: float = dataclasses.field(default_factory=time.time)
    endpoint_stats: Dict[str, Dict[str, Any]] = dataclasses.field(default_factory=lambda: defaultdict(_endpoint_bucket))
    errors: deque = dataclasses.field(default_factory=lambda: deque(maxlen=100))
    long_operations: Dict[str, Dict[str, Any]] = dataclasses.field(default_factory=dict)
    slow_requests_threshold_ms: float = 10000.0
    error_rate_threshold: float = 0.1
    # LLM calls and document indexing are allowed to take longer
    expected_long_operations: Dict[str, float] = dataclasses.field(default_factory=lambda: {
        "/upload": 120000.0,
        "/generate-test-cases": 60000.0,
        "/generate-gemini-test-cases": 60000.0,
        "/generate-claude-test-cases": 60000.0,
        "/ai-generate-playwright": 60000.0,
    })

    @property
    def avg_latency_ms(self) -> float:
        if self.requests_total == 0:
            return 0.0
        return self.total_latency_ms / self.requests_total

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.start_time


class APIMonitor:
    _instance = None
    metrics: APIMetrics

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(APIMonitor, cls).__new__(cls)
            cls._instance.metrics = APIMetrics()
        return cls._instance

    def reset(self) -> None:
        self.metrics = APIMetrics()

    def record_request(self, endpoint: str, latency_ms: float, success: bool = True, error: Optional[str] = None):
        m = self.metrics
        m.requests_total += 1
        m.total_latency_ms += latency_ms
        m.last_request_time = time.time()
        if success:
            m.requests_success += 1
        else:
            m.requests_failed += 1

        stats = m.endpoint_stats[endpoint]
        stats["count"] += 1
        stats["total_time"] += latency_ms
        stats["avg_time"] = stats["total_time"] / stats["count"]
        if not success:
            stats["errors"] += 1
            m.errors.append({
                "endpoint": endpoint,
                "error": error,
                "timestamp": datetime.now().isoformat(),
                "duration_ms": latency_ms,
            })
        self._check_performance_alerts(endpoint, latency_ms, success)

    def record_job_enqueued(self) -> None:
        self.metrics.jobs_enqueued += 1

    def start_long_operation(self, operation_name: str, details: str = "") -> str:
        """Start tracking a long-running operation (e.g. document indexing)."""
        operation_id = str(uuid4())
        self.metrics.long_operations[operation_id] = {
            "name": operation_name,
            "details": details,
            "start_time": time.monotonic(),
        }
        logger.info(f"Started long operation {operation_name} ({details})")
        return operation_id

    def end_long_operation(self, operation_id: str, success: bool = True, error: Optional[str] = None):
        operation = self.metrics.long_operations.pop(operation_id, None)
        if operation is None:
            logger.warning(f"Long operation {operation_id} not found")
            return
        duration = time.monotonic() - operation["start_time"]
        status = "completed" if success else f"failed: {error}"
        logger.info(f"Long operation {operation['name']} {status} in {duration:.1f}s")
        if success and operation["name"] == "index_document":
            self.metrics.documents_indexed += 1

    def _check_performance_alerts(self, endpoint: str, duration_ms: float, success: bool):
        threshold = self.metrics.expected_long_operations.get(endpoint, self.metrics.slow_requests_threshold_ms)
        if duration_ms > threshold:
            logger.warning(f"Slow request: {endpoint} took {duration_ms:.1f}ms (threshold: {threshold}ms)")

        if not success:
            error_rate = self.metrics.requests_failed / max(1, self.metrics.requests_total)
            if error_rate > self.metrics.error_rate_threshold:
                logger.error(f"High error rate: {error_rate:.1%} ({self.metrics.requests_failed}/{self.metrics.requests_total})")

    def get_stats(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "uptime_seconds": round(m.uptime_seconds, 2),
            "requests": {
                "total": m.requests_total,
                "success": m.requests_success,
                "failed": m.requests_failed,
            },
            "performance": {
                "avg_latency_ms": round(m.avg_latency_ms, 2),
            },
            "jobs_enqueued": m.jobs_enqueued,
            "documents_indexed": m.documents_indexed,
            "endpoints": dict(m.endpoint_stats),
            "recent_errors": list(m.errors)[-10:],
            "long_operations": len(m.long_operations),
        }

    def get_health_summary(self) -> Dict[str, Any]:
        stats = self.get_stats()
        issues = []
        if stats["requests"]["total"] > 0:
            error_rate = stats["requests"]["failed"] / stats["requests"]["total"]
            if error_rate > self.metrics.error_rate_threshold:
                issues.append(f"High error rate: {error_rate:.1%}")
        return {
            "issues": issues,
            "metrics": stats,
            "timestamp": datetime.now().isoformat(),
        }


monitor = APIMonitor()
