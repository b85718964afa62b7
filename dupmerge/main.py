"""FastAPI 应用入口。"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dupmerge.config import get_settings
from dupmerge.database.async_session import dispose_async_engine
from dupmerge.database.models import Base, get_engine, import_all_models

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001 - app 参数是 FastAPI 要求的
    """应用生命周期管理。

    启动时配置日志、创建数据库表并收尾上次遗留的运行，关闭时释放异步引擎。
    """
    from dupmerge.database.async_session import get_async_session_maker
    from dupmerge.deduplication.services.run_recorder import RunRecorder

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    import_all_models()
    Base.metadata.create_all(get_engine())
    logger.info("数据库表已就绪")

    # 单进程部署：启动时数据库中的 Running 行没有进程在执行
    await RunRecorder(get_async_session_maker()).recover_orphaned_runs()

    yield

    await dispose_async_engine()


# 创建 FastAPI 应用
app = FastAPI(
    title="dupmerge",
    description="重复记录检测与合并服务",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from dupmerge.monitoring.middleware import PrometheusMiddleware

settings = get_settings()
if settings.prometheus_enabled:
    app.add_middleware(PrometheusMiddleware)


@app.get("/health")
async def health_check():
    """健康检查端点。

    检查数据库连接，并列出正在执行去重运行的对象类型。
    始终返回 HTTP 200 以兼容 Docker HEALTHCHECK。
    """
    from sqlalchemy import text

    from dupmerge.database.async_session import get_async_session_maker
    from dupmerge.deduplication.services.run_lock import RunLockRegistry

    components = {}

    try:
        session_maker = get_async_session_maker()
        async with session_maker() as session:
            await session.execute(text("SELECT 1"))
        components["database"] = {"status": "healthy"}
    except Exception as e:
        components["database"] = {"status": "unhealthy", "error": str(e)}

    active = RunLockRegistry.get_instance().snapshot()
    components["runs"] = {"status": "healthy", "active": sorted(active)}

    overall = "healthy"
    if any(c["status"] == "unhealthy" for c in components.values()):
        overall = "degraded"

    return {"status": overall, "components": components}


# 导入并注册 API 路由
from dupmerge.deduplication.api import routes as deduplication_routes
from dupmerge.monitoring import routes as monitoring_routes

app.include_router(deduplication_routes.router)
app.include_router(monitoring_routes.router)
