"""Pytest 配置文件。

提供测试 Fixtures 和配置。
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dupmerge.config import Settings, clear_settings_cache
from dupmerge.database.models import Base, import_all_models
from dupmerge.deduplication.services.run_lock import RunLockRegistry
from dupmerge.records import normalizer
from dupmerge.records.domain.models import ChildRelationship, SourceRecord
from dupmerge.records.infrastructure.repository import SqlRecordStore
from dupmerge.records.schema import StaticSchemaIntrospector

# 导入所有 ORM 模型以确保它们被注册到 Base.metadata
import_all_models()

BASE_TIME = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_env_before_each_test():
    """在每个测试前后重置环境变量和进程内状态。"""
    original_env = os.environ.copy()
    os.environ["PROMETHEUS_ENABLED"] = "false"
    clear_settings_cache()
    RunLockRegistry.get_instance().clear_all()
    normalizer.clear_cache()

    yield

    os.environ.clear()
    os.environ.update(original_env)
    clear_settings_cache()
    RunLockRegistry.get_instance().clear_all()


@pytest.fixture
async def session_maker():
    """创建测试用的异步会话工厂。

    使用 StaticPool 让所有会话共享同一个内存数据库。
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield maker

    await engine.dispose()


@pytest.fixture
def record_store(session_maker) -> SqlRecordStore:
    """创建测试用的记录存储。"""
    return SqlRecordStore(session_maker)


@pytest.fixture
def introspector() -> StaticSchemaIntrospector:
    """Account 有 Contact 和 Opportunity 两个子关系。"""
    return StaticSchemaIntrospector(
        relationships={
            "Account": [
                ChildRelationship(relationship_field="AccountId", child_object_type="Contact"),
                ChildRelationship(relationship_field="AccountId", child_object_type="Opportunity"),
            ],
        },
        object_types={"Account", "Contact", "Lead"},
    )


@pytest.fixture
def test_settings() -> Settings:
    """测试配置 Fixture。"""
    return Settings(
        database_url="sqlite:///:memory:",
        log_level="WARNING",
        prometheus_enabled=False,
        default_partition_size=2,
        max_concurrent_merges=1,
        merge_max_attempts=1,
        accumulator_page_size=2,
    )


def _make_record(
    record_id: str,
    object_type: str = "Account",
    days: int = 0,
    **fields,
) -> SourceRecord:
    """创建测试记录，created_at 为 BASE_TIME 之后第 days 天。"""
    return SourceRecord(
        id=record_id,
        object_type=object_type,
        created_at=BASE_TIME + timedelta(days=days),
        fields=fields,
    )


@pytest.fixture
def six_accounts() -> list[SourceRecord]:
    """三对重复的 Account，每对格式不同但标准化后相同。"""
    return [
        _make_record("001", days=1, Name="Acme Corp", Phone="(555) 010-0100", City="Paris"),
        _make_record("002", days=2, Name="ACME corp.", Phone="555.010.0100", City=" paris "),
        _make_record("003", days=1, Name="Globex", Phone="555-0200", City="Berlin"),
        _make_record("004", days=3, Name="globex", Phone="5550200", City="BERLIN"),
        _make_record("005", days=2, Name="Initech", Phone="555 0300", City="Austin"),
        _make_record("006", days=1, Name="Initech!", Phone="(555)0300", City="austin"),
    ]


@pytest.fixture
def unique_account() -> SourceRecord:
    """与其他 Account 都不重复的记录。"""
    return _make_record(
        "007", days=1, Name="Umbrella", Phone="555-0400", City="Raccoon City"
    )


def _contacts_for(*account_ids: str) -> list[SourceRecord]:
    """为每个 Account 创建一个 Contact 子记录。"""
    return [
        _make_record(f"C-{account_id}", object_type="Contact", AccountId=account_id)
        for account_id in account_ids
    ]


@pytest.fixture
def make_record():
    """记录工厂 Fixture。"""
    return _make_record


@pytest.fixture
def contacts_for():
    """子记录工厂 Fixture。"""
    return _contacts_for


@pytest.fixture
def match_fields() -> tuple[str, ...]:
    return ("Name", "Phone", "City")
