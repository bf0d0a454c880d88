"""
Operation Monitoring for the Affiliation Service

This module provides:
- Timing context manager for store and backend operations
- Prometheus metrics (exposed by the HTTP layer on /metrics)
- In-process per-operation statistics
- Connection pool health probe

Usage:
    from database.monitoring import query_timer

    with query_timer("merge_unique_identities"):
        IdentityGraphService(session).merge_unique_identities("u1", "u2")
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List

from prometheus_client import Histogram, Counter, Gauge

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Configuration for operation monitoring."""
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True
    enable_logging: bool = True


_config = MonitoringConfig()


# ============================================
# PROMETHEUS METRICS
# ============================================

operation_duration = Histogram(
    'affiliation_operation_duration_seconds',
    'Store and backend operation duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

operation_total = Counter(
    'affiliation_operation_total',
    'Total number of store and backend operations',
    ['operation', 'status']
)

slow_operations_total = Counter(
    'affiliation_slow_operations_total',
    'Total number of slow operations',
    ['operation']
)

db_pool_checked_out = Gauge(
    'affiliation_db_pool_checked_out',
    'Number of affiliation store connections currently checked out'
)


# ============================================
# OPERATION STATS TRACKING
# ============================================

@dataclass
class QueryStats:
    """Statistics for a single operation type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float = float('inf')
    max_time_ms: float = 0.0
    errors: int = 0
    slow_queries: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.min_time_ms = min(self.min_time_ms, duration_ms)
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()
        if error:
            self.errors += 1
        if slow:
            self.slow_queries += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'min_time_ms': round(self.min_time_ms, 2) if self.count else 0.0,
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class QueryStatsCollector:
    """Thread-safe collector for operation statistics."""

    def __init__(self):
        self._stats: Dict[str, QueryStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = QueryStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation:
                stat = self._stats.get(operation)
                return stat.to_dict() if stat else {}
            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {op: s.to_dict() for op, s in self._stats.items()}
            }

    def get_slow_queries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.to_dict() for s in self._stats.values() if s.slow_queries > 0]

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


_stats_collector = QueryStatsCollector()


def get_db_metrics(operation: Optional[str] = None) -> Dict[str, Any]:
    """Current per-operation statistics (one operation, or all of them)."""
    return _stats_collector.get_stats(operation)


def get_slow_query_report() -> List[Dict[str, Any]]:
    return _stats_collector.get_slow_queries()


def reset_metrics() -> None:
    _stats_collector.reset()


# ============================================
# QUERY TIMER
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Time an operation, record its statistics and log it when slow.

    Args:
        operation: Name of the operation (e.g., 'put_org_domain', 'top_contributors')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000
        is_slow = duration_ms > _config.slow_query_threshold_ms
        is_warning = duration_ms > _config.warning_threshold_ms

        _stats_collector.record(
            operation=operation,
            duration_ms=duration_ms,
            error=error_occurred,
            slow=is_slow
        )

        if _config.enable_prometheus:
            status = "error" if error_occurred else "success"
            operation_duration.labels(operation=operation, status=status).observe(duration)
            operation_total.labels(operation=operation, status=status).inc()
            if is_slow:
                slow_operations_total.labels(operation=operation).inc()

        if _config.enable_logging:
            if is_slow:
                logger.warning(
                    f"SLOW OPERATION: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_query_threshold_ms}ms)"
                )
            elif is_warning and not error_occurred:
                logger.info(f"Operation {operation} took {duration_ms:.2f}ms")


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    """Affiliation store health status."""
    healthy: bool
    latency_ms: float
    pool_checked_out: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'pool_checked_out': self.pool_checked_out,
            'error': self.error,
            'timestamp': self.timestamp.isoformat()
        }


def check_health(engine, session_factory) -> HealthStatus:
    """
    Probe the affiliation store with SELECT 1 and report pool usage.

    Args:
        engine: SQLAlchemy Engine
        session_factory: SQLAlchemy session factory

    Returns:
        HealthStatus with check results
    """
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    from errors import redact

    start_time = time.perf_counter()
    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
    except SQLAlchemyError as e:
        latency = (time.perf_counter() - start_time) * 1000
        logger.error(f"Database health check failed: {redact(str(e))}")
        return HealthStatus(healthy=False, latency_ms=latency, error=redact(str(e)))

    latency = (time.perf_counter() - start_time) * 1000
    # StaticPool and NullPool do not track checkouts
    checkedout = getattr(engine.pool, "checkedout", None)
    checked_out = checkedout() if callable(checkedout) else 0
    db_pool_checked_out.set(checked_out)
    return HealthStatus(healthy=True, latency_ms=latency, pool_checked_out=checked_out)
