"""分区累加器。

把只能看到单个分区的扫描和全局分组连接起来：
每个分区的 (指纹, 记录 ID) 写入数据库，跨分区不在内存中保留状态，
最后一个分区处理完之后统一汇总出重复组。
"""

import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.deduplication.domain.exceptions import RunStateError
from dupmerge.deduplication.domain.fingerprint import FingerprintEngine
from dupmerge.deduplication.infrastructure.models import FingerprintMemberOrm
from dupmerge.records.domain.models import SourceRecord

logger = logging.getLogger(__name__)

_IN_CHUNK_SIZE = 500


class PartitionAccumulator:
    """持久化的指纹累加器。

    累加只插入 (run_result_id, fingerprint, record_id) 行，不做读改写，
    因此分区之间的处理顺序不影响最终分组，并发写入也不会丢失成员。
    同一记录重复吸收时只保留一行。
    """

    DEFAULT_PAGE_SIZE = 500

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        run_result_id: int,
        fingerprint_engine: FingerprintEngine,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        """初始化累加器。

        Args:
            session_maker: 异步会话工厂
            run_result_id: 所属运行结果 ID
            fingerprint_engine: 指纹计算器
            page_size: 汇总时每页读取的指纹数
        """
        self._session_maker = session_maker
        self._run_result_id = run_result_id
        self._fingerprint_engine = fingerprint_engine
        self._page_size = page_size
        self._finalized = False

    @property
    def run_result_id(self) -> int:
        return self._run_result_id

    @property
    def finalized(self) -> bool:
        return self._finalized

    async def absorb(
        self,
        partition: Sequence[SourceRecord],
        match_fields: Sequence[str],
    ) -> int:
        """吸收一个分区。

        计算每条记录的指纹并写入累加表，指纹为空的记录被跳过。

        Args:
            partition: 分区内的记录
            match_fields: 匹配字段（有序）

        Returns:
            新写入的成员数

        Raises:
            RunStateError: 累加器已汇总
        """
        if self._finalized:
            raise RunStateError("累加器已汇总，不能再吸收分区")

        fingerprints: dict[str, str] = {}
        skipped = 0
        for record in partition:
            fingerprint = self._fingerprint_engine.fingerprint_of(record, match_fields)
            if not fingerprint:
                skipped += 1
                continue
            fingerprints[record.id] = fingerprint

        if not fingerprints:
            logger.debug(f"分区无可分组记录: {len(partition)} 条, 跳过 {skipped} 条")
            return 0

        async with self._session_maker() as session:
            async with session.begin():
                record_ids = list(fingerprints)
                for i in range(0, len(record_ids), _IN_CHUNK_SIZE):
                    stmt = select(FingerprintMemberOrm.record_id).where(
                        FingerprintMemberOrm.run_result_id == self._run_result_id,
                        FingerprintMemberOrm.record_id.in_(
                            record_ids[i : i + _IN_CHUNK_SIZE]
                        ),
                    )
                    for existing_id in (await session.execute(stmt)).scalars():
                        fingerprints.pop(existing_id, None)

                session.add_all(
                    FingerprintMemberOrm(
                        run_result_id=self._run_result_id,
                        fingerprint=fingerprint,
                        record_id=record_id,
                    )
                    for record_id, fingerprint in fingerprints.items()
                )

        logger.debug(
            f"吸收分区: {len(partition)} 条记录, 新增 {len(fingerprints)} 个成员, "
            f"跳过空指纹 {skipped} 条"
        )
        return len(fingerprints)

    def finalize_all(self) -> AsyncIterator[tuple[str, frozenset[str]]]:
        """汇总所有重复组。

        只能在最后一个分区吸收完之后调用一次。只返回成员数不少于 2 的指纹，
        单条记录的指纹直接丢弃。

        Returns:
            按指纹顺序产出 (指纹, 成员 ID 集合) 的异步迭代器

        Raises:
            RunStateError: 重复调用
        """
        if self._finalized:
            raise RunStateError("累加器只能汇总一次")
        self._finalized = True
        return self._iter_groups()

    async def _iter_groups(self) -> AsyncIterator[tuple[str, frozenset[str]]]:
        last_fingerprint: str | None = None

        while True:
            async with self._session_maker() as session:
                fp_stmt = (
                    select(FingerprintMemberOrm.fingerprint)
                    .where(FingerprintMemberOrm.run_result_id == self._run_result_id)
                    .group_by(FingerprintMemberOrm.fingerprint)
                    .having(func.count(FingerprintMemberOrm.id) >= 2)
                )
                if last_fingerprint is not None:
                    fp_stmt = fp_stmt.where(
                        FingerprintMemberOrm.fingerprint > last_fingerprint
                    )
                fp_stmt = fp_stmt.order_by(FingerprintMemberOrm.fingerprint).limit(
                    self._page_size
                )
                page = list((await session.execute(fp_stmt)).scalars())

                if not page:
                    return

                member_stmt = select(
                    FingerprintMemberOrm.fingerprint, FingerprintMemberOrm.record_id
                ).where(
                    FingerprintMemberOrm.run_result_id == self._run_result_id,
                    FingerprintMemberOrm.fingerprint.in_(page),
                )
                members: defaultdict[str, set[str]] = defaultdict(set)
                for fingerprint, record_id in (await session.execute(member_stmt)).all():
                    members[fingerprint].add(record_id)

            for fingerprint in page:
                yield fingerprint, frozenset(members[fingerprint])

            last_fingerprint = page[-1]
            if len(page) < self._page_size:
                return

    async def member_count(self) -> int:
        """返回累加表中该运行的成员总数。"""
        async with self._session_maker() as session:
            stmt = select(func.count()).select_from(FingerprintMemberOrm).where(
                FingerprintMemberOrm.run_result_id == self._run_result_id
            )
            return (await session.execute(stmt)).scalar_one()

    async def purge(self) -> int:
        """删除该运行的全部累加数据。

        Returns:
            删除的行数
        """
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(FingerprintMemberOrm).where(
                        FingerprintMemberOrm.run_result_id == self._run_result_id
                    )
                )
        logger.debug(f"清理累加数据: run_result_id={self._run_result_id}, {result.rowcount} 行")
        return result.rowcount
