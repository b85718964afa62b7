"""业务记录存储。

管理源记录的分区扫描、批量读取、子记录重新挂接和删除。
"""

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.records.domain.models import ChildRelationship, SourceRecord
from dupmerge.records.infrastructure.models import SourceRecordOrm

logger = logging.getLogger(__name__)

# IN 子句单次最多携带的 ID 数
_IN_CHUNK_SIZE = 500


class RecordStoreError(Exception):
    """记录存储操作错误。"""

    pass


class ValidationFailure(RecordStoreError):
    """记录存储拒绝了重新挂接或删除操作。"""

    pass


def _chunks(ids: Sequence[str], size: int = _IN_CHUNK_SIZE) -> Iterable[Sequence[str]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


class RecordUnitOfWork:
    """单个事务内的记录写操作。

    由 SqlRecordStore.unit_of_work() 创建，退出上下文时统一提交或回滚。
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def reparent(
        self,
        relationship: ChildRelationship,
        from_ids: Sequence[str],
        to_id: str,
    ) -> int:
        """将引用 from_ids 的子记录改为引用 to_id。

        Args:
            relationship: 子关系
            from_ids: 原父记录 ID 列表
            to_id: 新父记录 ID

        Returns:
            被更新的子记录数
        """
        if not from_ids:
            return 0

        field = relationship.relationship_field
        updated = 0
        now = datetime.now(timezone.utc)
        for chunk in _chunks(list(from_ids)):
            stmt = select(SourceRecordOrm).where(
                SourceRecordOrm.object_type == relationship.child_object_type,
                SourceRecordOrm.fields[field].as_string().in_(chunk),
            )
            result = await self._session.execute(stmt)
            for child in result.scalars().all():
                child.fields = {**child.fields, field: to_id}
                child.last_modified_at = now
                updated += 1

        await self._session.flush()
        logger.debug(
            f"重新挂接 {relationship.child_object_type}.{field}: "
            f"{updated} 条子记录 -> {to_id}"
        )
        return updated

    async def count_references(
        self,
        relationship: ChildRelationship,
        parent_ids: Sequence[str],
    ) -> int:
        """统计仍引用 parent_ids 的子记录数。"""
        total = 0
        for chunk in _chunks(list(parent_ids)):
            stmt = select(func.count()).select_from(SourceRecordOrm).where(
                SourceRecordOrm.object_type == relationship.child_object_type,
                SourceRecordOrm.fields[relationship.relationship_field]
                .as_string()
                .in_(chunk),
            )
            total += (await self._session.execute(stmt)).scalar_one()
        return total

    async def delete(
        self,
        object_type: str,
        ids: Sequence[str],
        guard_relationships: Sequence[ChildRelationship] = (),
    ) -> int:
        """删除记录。

        Args:
            object_type: 对象类型
            ids: 待删除的记录 ID
            guard_relationships: 删除前需确认已无引用的子关系

        Returns:
            删除的记录数

        Raises:
            ValidationFailure: 记录不存在或仍被子记录引用
        """
        ids = list(ids)
        if not ids:
            return 0

        for relationship in guard_relationships:
            remaining = await self.count_references(relationship, ids)
            if remaining:
                raise ValidationFailure(
                    f"仍有 {remaining} 条 {relationship.child_object_type} "
                    f"记录通过 {relationship.relationship_field} 引用待删除记录"
                )

        deleted = 0
        for chunk in _chunks(ids):
            stmt = delete(SourceRecordOrm).where(
                SourceRecordOrm.object_type == object_type,
                SourceRecordOrm.id.in_(chunk),
            )
            result = await self._session.execute(stmt)
            deleted += result.rowcount

        if deleted != len(ids):
            raise ValidationFailure(
                f"删除 {object_type} 记录失败: 期望 {len(ids)} 条, 实际 {deleted} 条"
            )

        return deleted


class SqlRecordStore:
    """基于 SQLAlchemy 的业务记录存储。

    每个分区和每个合并工作单元使用独立的会话，
    不在进程内跨分区保留记录。
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        """初始化记录存储。

        Args:
            session_maker: 异步会话工厂
        """
        self._session_maker = session_maker

    async def add_records(self, records: Sequence[SourceRecord]) -> int:
        """批量写入记录。

        Args:
            records: 记录列表

        Returns:
            写入的记录数

        Raises:
            RecordStoreError: 写入失败时抛出
        """
        try:
            async with self._session_maker() as session:
                session.add_all(SourceRecordOrm.from_domain(r) for r in records)
                await session.commit()
            return len(records)
        except Exception as e:
            logger.error(f"写入记录失败: {e}")
            raise RecordStoreError(f"写入记录失败: {e}") from e

    async def count(self, object_type: str) -> int:
        """统计对象类型的记录数。"""
        async with self._session_maker() as session:
            stmt = select(func.count()).select_from(SourceRecordOrm).where(
                SourceRecordOrm.object_type == object_type
            )
            return (await session.execute(stmt)).scalar_one()

    async def iter_partitions(
        self, object_type: str, partition_size: int
    ) -> AsyncIterator[list[SourceRecord]]:
        """按 ID 顺序分区扫描记录。

        使用键集分页，每个分区一个短会话。

        Args:
            object_type: 对象类型
            partition_size: 每个分区的最大记录数

        Yields:
            每个分区的记录列表
        """
        last_id: str | None = None
        while True:
            async with self._session_maker() as session:
                stmt = select(SourceRecordOrm).where(
                    SourceRecordOrm.object_type == object_type
                )
                if last_id is not None:
                    stmt = stmt.where(SourceRecordOrm.id > last_id)
                stmt = stmt.order_by(SourceRecordOrm.id).limit(partition_size)
                result = await session.execute(stmt)
                partition = [orm.to_domain() for orm in result.scalars().all()]

            if not partition:
                return

            last_id = partition[-1].id
            yield partition

            if len(partition) < partition_size:
                return

    async def fetch(
        self, object_type: str, ids: Iterable[str]
    ) -> list[SourceRecord]:
        """按 ID 读取记录，不存在的 ID 会被忽略。"""
        ids = list(ids)
        records: list[SourceRecord] = []
        async with self._session_maker() as session:
            for chunk in _chunks(ids):
                stmt = select(SourceRecordOrm).where(
                    SourceRecordOrm.object_type == object_type,
                    SourceRecordOrm.id.in_(chunk),
                )
                result = await session.execute(stmt)
                records.extend(orm.to_domain() for orm in result.scalars().all())
        return records

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[RecordUnitOfWork]:
        """开启一个原子写事务。

        上下文正常退出时提交，出现任何异常时回滚并继续抛出。
        """
        async with self._session_maker() as session:
            async with session.begin():
                yield RecordUnitOfWork(session)
