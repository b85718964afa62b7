"""异步数据库引擎与会话工厂。

去重运行的每个阶段（分区累加、组合并、运行记录）都通过这里的
会话工厂打开自己的短会话。
"""

import logging
import threading

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# 同步驱动前缀 -> 异步驱动前缀
_ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

# 连接池采样间隔（秒）
POOL_SAMPLE_INTERVAL = 5.0

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None

_pool_sampler: threading.Thread | None = None
_pool_sampler_stop = threading.Event()


def get_async_database_url(database_url: str) -> str:
    """把配置中的数据库地址转换为异步驱动地址。

    已经指定驱动的地址原样返回。
    例如 sqlite:///./dupmerge.db -> sqlite+aiosqlite:///./dupmerge.db
    """
    for prefix, async_prefix in _ASYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return async_prefix + database_url[len(prefix):]
    return database_url


def _sample_pool() -> None:
    from dupmerge.monitoring import metrics

    while not _pool_sampler_stop.wait(POOL_SAMPLE_INTERVAL):
        engine = _async_engine
        if engine is None:
            continue
        pool = engine.pool
        # StaticPool / NullPool 没有 size()
        if not hasattr(pool, "size"):
            continue
        try:
            metrics.db_pool_size.set(pool.size())
            metrics.db_pool_available.set(pool.checkedin())
        except Exception as e:
            logger.warning(f"采样连接池指标失败: {e}")


def _start_pool_sampler() -> None:
    from dupmerge.config import get_settings

    global _pool_sampler

    if not get_settings().prometheus_enabled:
        return
    if _pool_sampler is not None and _pool_sampler.is_alive():
        return

    _pool_sampler_stop.clear()
    _pool_sampler = threading.Thread(
        target=_sample_pool,
        daemon=True,
        name="dupmerge-pool-sampler",
    )
    _pool_sampler.start()
    logger.info("连接池指标采样已启动")


def stop_metrics_collection() -> None:
    """停止连接池指标采样线程。"""
    _pool_sampler_stop.set()
    logger.info("连接池指标采样已停止")


def get_async_engine() -> AsyncEngine:
    """获取异步引擎，首次调用时按配置创建。"""
    global _async_engine
    if _async_engine is None:
        from dupmerge.config import get_settings

        settings = get_settings()
        url = get_async_database_url(settings.database_url)
        _async_engine = create_async_engine(
            url,
            echo=settings.log_level == "DEBUG",
            pool_pre_ping=not url.startswith("sqlite"),
        )
        logger.info(f"异步数据库引擎已创建: {url.split('://', 1)[0]}")
        _start_pool_sampler()
    return _async_engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """获取异步会话工厂。

    expire_on_commit=False，提交后仍可读取 ORM 属性再转换为领域模型。
    """
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


async def dispose_async_engine() -> None:
    """释放异步引擎的连接池，应用关闭时调用。"""
    global _async_engine, _async_session_maker

    stop_metrics_collection()
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_maker = None
