"""Prometheus 指标定义。

定义去重运行相关的 Prometheus 监控指标。
"""

from prometheus_client import Counter, Gauge, Histogram

# 运行总数计数器
# 标签: status (终态: Completed, CompletedWithErrors, Failed)
runs_total = Counter(
    "dupmerge_runs_total",
    "Total duplicate runs by terminal status",
    ["status"],
)

# 正在执行的运行数
active_runs = Gauge(
    "dupmerge_active_runs",
    "Number of duplicate runs currently executing",
)

# 已扫描记录数
# 标签: object_type (对象类型)
records_scanned_total = Counter(
    "dupmerge_records_scanned_total",
    "Total records scanned by duplicate runs",
    ["object_type"],
)

# 重复组处理结果计数器
# 标签: outcome (DryRun, Merged, Failed)
groups_total = Counter(
    "dupmerge_groups_total",
    "Total duplicate groups by merge outcome",
    ["outcome"],
)

# 运行耗时直方图
run_duration_seconds = Histogram(
    "dupmerge_run_duration_seconds",
    "Duplicate run duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 3600.0),
)

# 数据库连接池大小
db_pool_size = Gauge(
    "dupmerge_db_pool_size",
    "Database connection pool size",
)

# 数据库可用连接数
db_pool_available = Gauge(
    "dupmerge_db_pool_available",
    "Available database connections",
)

# HTTP 请求计数器
# 标签: method, path (标准化路径), status
http_requests_total = Counter(
    "dupmerge_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

# HTTP 请求延迟直方图
http_request_duration_seconds = Histogram(
    "dupmerge_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
