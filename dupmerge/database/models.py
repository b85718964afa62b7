"""数据库模型模块。

定义 SQLAlchemy 声明式基类和同步引擎。
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类。"""

    pass


# 延迟初始化引擎
_engine = None


def get_engine():
    """获取数据库引擎。

    用于同步数据库操作（建表、迁移）。引擎在首次调用时创建。
    """
    global _engine
    if _engine is None:
        from dupmerge.config import get_settings

        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            echo=settings.log_level == "DEBUG",
        )
    return _engine


def import_all_models() -> None:
    """导入所有 ORM 模型，确保它们注册到 Base.metadata。"""
    import dupmerge.deduplication.infrastructure.models  # noqa: F401
    import dupmerge.records.infrastructure.models  # noqa: F401
