"""Prometheus 监控中间件。

记录 HTTP 请求的计数和延迟指标。
"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from dupmerge.monitoring import metrics

# 动态路径参数替换规则，按顺序匹配
_PATH_PATTERNS = [
    (re.compile(r"^/api/duplicates/runs/by-config/[^/]+$"), "/api/duplicates/runs/by-config/{configuration_name}"),
    (re.compile(r"^/api/duplicates/runs/[^/]+/groups$"), "/api/duplicates/runs/{batch_job_id}/groups"),
    (re.compile(r"^/api/duplicates/runs/[^/]+/progress$"), "/api/duplicates/runs/{batch_job_id}/progress"),
    (re.compile(r"^/api/duplicates/runs/[^/]+$"), "/api/duplicates/runs/{batch_job_id}"),
    (re.compile(r"^/api/duplicates/configurations/[^/]+$"), "/api/duplicates/configurations/{name}"),
    (re.compile(r"^/api/duplicates/groups/\d+/conflicts$"), "/api/duplicates/groups/{group_detail_id}/conflicts"),
    (re.compile(r"^/api/duplicates/groups/\d+/merge$"), "/api/duplicates/groups/{group_detail_id}/merge"),
]


def normalize_path(path: str) -> str:
    """标准化请求路径，把动态路径参数替换为占位符。

    例如 /api/duplicates/runs/abc123 -> /api/duplicates/runs/{batch_job_id}
    """
    for pattern, replacement in _PATH_PATTERNS:
        if pattern.match(path):
            return replacement
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Prometheus 监控中间件。

    自动记录所有 HTTP 请求的计数和延迟。
    """

    def __init__(
        self,
        app: ASGIApp,
        excluded_paths: list[str] | None = None,
    ) -> None:
        """初始化中间件。

        Args:
            app: ASGI 应用
            excluded_paths: 排除监控的路径列表
        """
        super().__init__(app)
        self.excluded_paths = set(excluded_paths or ["/metrics"])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        path = normalize_path(request.url.path)
        metrics.http_requests_total.labels(
            method=request.method,
            path=path,
            status=str(response.status_code),
        ).inc()
        metrics.http_request_duration_seconds.labels(
            method=request.method,
            path=path,
        ).observe(duration)

        return response
