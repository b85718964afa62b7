"""Prometheus 监控模块。

提供去重运行、重复组合并和数据库连接池的监控指标。
"""

from dupmerge.monitoring.metrics import (
    active_runs,
    db_pool_available,
    db_pool_size,
    groups_total,
    http_request_duration_seconds,
    http_requests_total,
    records_scanned_total,
    run_duration_seconds,
    runs_total,
)

__all__ = [
    "runs_total",
    "active_runs",
    "records_scanned_total",
    "groups_total",
    "run_duration_seconds",
    "db_pool_size",
    "db_pool_available",
    "http_requests_total",
    "http_request_duration_seconds",
]
