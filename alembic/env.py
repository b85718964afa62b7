from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

# 导入项目配置和模型
from dupmerge.config import get_settings
from dupmerge.database.models import Base, import_all_models

# 导入所有 ORM 模型以确保它们被注册到 Base.metadata
import_all_models()

config = context.config

# 从项目配置获取数据库 URL
settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# 添加模型的 MetaData 对象，用于 'autogenerate' 支持
target_metadata = Base.metadata


def _sync_url(url: str) -> str:
    # 迁移使用同步驱动
    return url.replace("sqlite+aiosqlite:///", "sqlite:///").replace(
        "postgresql+asyncpg://", "postgresql://"
    )


def run_migrations_offline() -> None:
    """以离线模式运行迁移，只输出 SQL 脚本。"""
    context.configure(
        url=_sync_url(config.get_main_option("sqlalchemy.url")),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """以在线模式运行迁移。"""
    connectable = create_engine(
        _sync_url(settings.database_url),
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=True,  # SQLite 需要 batch 模式来修改表结构
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
