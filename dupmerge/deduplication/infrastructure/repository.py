"""去重运行仓库。

管理运行结果、组明细和命名配置的持久化与查询。
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dupmerge.deduplication.domain.exceptions import ConfigurationError, NotFoundError
from dupmerge.deduplication.domain.models import (
    DUPLICATE_IDS_DELIMITER,
    DuplicateGroup,
    DuplicateStatistics,
    GroupDetail,
    MergeOutcome,
    MergeStatus,
    ObjectStatistics,
    RunConfiguration,
    RunResult,
    RunStatus,
)
from dupmerge.deduplication.infrastructure.models import (
    GroupDetailOrm,
    RunConfigurationOrm,
    RunResultOrm,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """仓库操作错误。"""

    pass


@dataclass(frozen=True)
class GroupAggregate:
    """组明细聚合结果。"""

    groups_found: int
    groups_failed: int
    duplicates_found: int
    records_merged: int
    average_match_score: float


class RunResultRepository:
    """运行结果仓库。

    管理 RunResult 和 GroupDetail 的持久化和查询操作。
    终态写入只对 Running 状态的行生效。
    """

    def __init__(self, session: AsyncSession) -> None:
        """初始化仓库。

        Args:
            session: 异步数据库会话
        """
        self._session = session

    @staticmethod
    def generate_batch_job_id() -> str:
        """生成新的批处理作业 ID。

        Returns:
            UUID 字符串
        """
        return str(uuid.uuid4())

    async def create_run(
        self,
        config: RunConfiguration,
        total_records_estimate: int = 0,
    ) -> RunResult:
        """创建状态为 Running 的运行结果。

        Args:
            config: 运行配置
            total_records_estimate: 记录数估计

        Returns:
            RunResult: 新建的运行结果

        Raises:
            RepositoryError: 保存失败时抛出
        """
        try:
            orm = RunResultOrm(
                batch_job_id=self.generate_batch_job_id(),
                configuration_name=config.configuration_name,
                object_type=config.object_type,
                is_dry_run=config.dry_run,
                master_strategy=config.master_strategy,
                match_fields=list(config.match_fields),
                partition_size=config.partition_size,
                duplicates_found=0,
                records_processed=0,
                records_merged=0,
                groups_found=0,
                groups_failed=0,
                partitions_processed=0,
                total_records_estimate=total_records_estimate,
                processing_time_ms=0,
                average_match_score=0.0,
                status=RunStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
            )
            self._session.add(orm)
            await self._session.flush()
            return orm.to_domain()

        except Exception as e:
            logger.error(f"创建运行结果失败: {e}")
            raise RepositoryError(f"创建运行结果失败: {e}") from e

    async def get_run(self, run_result_id: int) -> RunResult | None:
        """按 ID 查询运行结果。"""
        orm = await self._session.get(RunResultOrm, run_result_id)
        return orm.to_domain() if orm else None

    async def get_run_by_job(self, batch_job_id: str) -> RunResult | None:
        """按批处理作业 ID 查询运行结果。"""
        stmt = select(RunResultOrm).where(RunResultOrm.batch_job_id == batch_job_id)
        orm = (await self._session.execute(stmt)).scalar_one_or_none()
        return orm.to_domain() if orm else None

    async def find_running(self, object_type: str) -> RunResult | None:
        """查询对象类型正在执行的运行。"""
        stmt = (
            select(RunResultOrm)
            .where(
                RunResultOrm.object_type == object_type,
                RunResultOrm.status == RunStatus.RUNNING.value,
            )
            .order_by(RunResultOrm.started_at.desc())
            .limit(1)
        )
        orm = (await self._session.execute(stmt)).scalars().first()
        return orm.to_domain() if orm else None

    async def increment_processed(self, run_result_id: int, records: int) -> bool:
        """累加已扫描记录数和已处理分区数。

        使用单条 UPDATE 语句在数据库端累加。

        Returns:
            是否更新成功（运行已处于终态时返回 False）
        """
        stmt = (
            update(RunResultOrm)
            .where(
                RunResultOrm.id == run_result_id,
                RunResultOrm.status == RunStatus.RUNNING.value,
            )
            .values(
                records_processed=RunResultOrm.records_processed + records,
                partitions_processed=RunResultOrm.partitions_processed + 1,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def finalize_run(
        self,
        run_result_id: int,
        status: RunStatus,
        processing_time_ms: int,
        aggregate: GroupAggregate | None = None,
        error_message: str | None = None,
    ) -> bool:
        """写入运行终态。

        Returns:
            是否更新成功（运行已处于终态时返回 False）
        """
        values: dict = {
            "status": status.value,
            "processing_time_ms": processing_time_ms,
            "error_message": error_message,
            "completed_at": datetime.now(timezone.utc),
        }
        if aggregate is not None:
            values.update(
                groups_found=aggregate.groups_found,
                groups_failed=aggregate.groups_failed,
                duplicates_found=aggregate.duplicates_found,
                records_merged=aggregate.records_merged,
                average_match_score=aggregate.average_match_score,
            )

        stmt = (
            update(RunResultOrm)
            .where(
                RunResultOrm.id == run_result_id,
                RunResultOrm.status == RunStatus.RUNNING.value,
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def fail_running_runs(self, error_message: str) -> list[str]:
        """把所有 Running 状态的运行标记为 Failed。

        Returns:
            被标记的批处理作业 ID 列表
        """
        stmt = select(RunResultOrm.batch_job_id).where(
            RunResultOrm.status == RunStatus.RUNNING.value
        )
        batch_job_ids = list((await self._session.execute(stmt)).scalars().all())
        if not batch_job_ids:
            return []

        await self._session.execute(
            update(RunResultOrm)
            .where(
                RunResultOrm.batch_job_id.in_(batch_job_ids),
                RunResultOrm.status == RunStatus.RUNNING.value,
            )
            .values(
                status=RunStatus.FAILED.value,
                error_message=error_message,
                completed_at=datetime.now(timezone.utc),
            )
        )
        return batch_job_ids

    async def add_group_detail(
        self,
        run_result_id: int,
        group: DuplicateGroup,
        outcome: MergeOutcome,
    ) -> GroupDetail:
        """保存一条组明细。

        Raises:
            RepositoryError: 保存失败时抛出
        """
        try:
            orm = GroupDetailOrm(
                run_result_id=run_result_id,
                group_key=group.fingerprint,
                record_count=group.record_count,
                match_score=group.match_score,
                field_values=dict(group.field_values),
                master_record_id=group.master_id,
                duplicate_record_ids=DUPLICATE_IDS_DELIMITER.join(group.duplicate_ids),
                object_name=group.object_type,
                merge_status=outcome.status.value,
                error_message=outcome.error_message,
                created_at=datetime.now(timezone.utc),
            )
            self._session.add(orm)
            await self._session.flush()
            return orm.to_domain()

        except Exception as e:
            logger.error(f"保存组明细失败: {e}")
            raise RepositoryError(f"保存组明细失败: {e}") from e

    async def aggregate_groups(self, run_result_id: int) -> GroupAggregate:
        """从组明细聚合运行统计。"""
        merged_records = case(
            (
                GroupDetailOrm.merge_status == MergeStatus.MERGED.value,
                GroupDetailOrm.record_count - 1,
            ),
            else_=0,
        )
        failed_groups = case(
            (GroupDetailOrm.merge_status == MergeStatus.FAILED.value, 1),
            else_=0,
        )
        stmt = select(
            func.count(GroupDetailOrm.id).label("groups"),
            func.coalesce(func.sum(failed_groups), 0).label("failed"),
            func.coalesce(func.sum(GroupDetailOrm.record_count - 1), 0).label("duplicates"),
            func.coalesce(func.sum(merged_records), 0).label("merged"),
            func.coalesce(func.avg(GroupDetailOrm.match_score), 0.0).label("avg_score"),
        ).where(GroupDetailOrm.run_result_id == run_result_id)
        row = (await self._session.execute(stmt)).one()

        return GroupAggregate(
            groups_found=int(row.groups),
            groups_failed=int(row.failed),
            duplicates_found=int(row.duplicates),
            records_merged=int(row.merged),
            average_match_score=float(row.avg_score),
        )

    async def failed_group_messages(self, run_result_id: int, limit: int = 5) -> list[str]:
        """查询失败组的错误信息（按明细 ID 顺序）。"""
        stmt = (
            select(GroupDetailOrm.master_record_id, GroupDetailOrm.error_message)
            .where(
                GroupDetailOrm.run_result_id == run_result_id,
                GroupDetailOrm.merge_status == MergeStatus.FAILED.value,
            )
            .order_by(GroupDetailOrm.id)
            .limit(limit)
        )
        rows = (await self._session.execute(stmt)).all()
        return [f"{master_id}: {message}" for master_id, message in rows]

    async def count_groups(self, run_result_id: int) -> int:
        """统计运行的组明细数。"""
        stmt = select(func.count()).select_from(GroupDetailOrm).where(
            GroupDetailOrm.run_result_id == run_result_id
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def list_groups(
        self, run_result_id: int, limit: int, offset: int
    ) -> list[GroupDetail]:
        """分页查询组明细，按匹配分数降序、ID 升序排列。"""
        stmt = (
            select(GroupDetailOrm)
            .where(GroupDetailOrm.run_result_id == run_result_id)
            .order_by(GroupDetailOrm.match_score.desc(), GroupDetailOrm.id.asc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [orm.to_domain() for orm in result.scalars().all()]

    async def get_group_detail(self, group_detail_id: int) -> GroupDetail | None:
        """按 ID 查询组明细。"""
        orm = await self._session.get(GroupDetailOrm, group_detail_id)
        return orm.to_domain() if orm else None

    async def update_group_outcome(
        self,
        group_detail_id: int,
        master_record_id: str,
        duplicate_ids: list[str],
        outcome: MergeOutcome,
    ) -> bool:
        """写入人工复核后的合并结果。

        只对 DryRun 或 Failed 状态的组明细生效，所属运行的统计不变。

        Returns:
            是否更新成功（组明细已合并时返回 False）
        """
        stmt = (
            update(GroupDetailOrm)
            .where(
                GroupDetailOrm.id == group_detail_id,
                GroupDetailOrm.merge_status.in_(
                    [MergeStatus.DRY_RUN.value, MergeStatus.FAILED.value]
                ),
            )
            .values(
                master_record_id=master_record_id,
                duplicate_record_ids=DUPLICATE_IDS_DELIMITER.join(duplicate_ids),
                merge_status=outcome.status.value,
                error_message=outcome.error_message,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def list_recent_runs(
        self, limit: int = 20, object_type: str | None = None
    ) -> list[RunResult]:
        """查询最近开始的运行。"""
        stmt = select(RunResultOrm)
        if object_type:
            stmt = stmt.where(RunResultOrm.object_type == object_type)
        stmt = stmt.order_by(RunResultOrm.started_at.desc(), RunResultOrm.id.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return [orm.to_domain() for orm in result.scalars().all()]

    async def get_statistics(self) -> DuplicateStatistics:
        """按对象类型汇总所有运行的统计。"""
        stmt = select(
            RunResultOrm.object_type,
            func.count(RunResultOrm.id).label("runs"),
            func.coalesce(func.sum(RunResultOrm.duplicates_found), 0).label("duplicates"),
            func.coalesce(func.sum(RunResultOrm.records_merged), 0).label("merged"),
            func.coalesce(func.sum(RunResultOrm.records_processed), 0).label("processed"),
        ).group_by(RunResultOrm.object_type)
        rows = (await self._session.execute(stmt)).all()

        by_object = {
            row.object_type: ObjectStatistics(
                total_runs=int(row.runs),
                total_duplicates=int(row.duplicates),
                total_merged=int(row.merged),
                total_processed=int(row.processed),
            )
            for row in rows
        }
        return DuplicateStatistics(
            total_runs=sum(s.total_runs for s in by_object.values()),
            total_duplicates=sum(s.total_duplicates for s in by_object.values()),
            total_merged=sum(s.total_merged for s in by_object.values()),
            total_processed=sum(s.total_processed for s in by_object.values()),
            by_object=by_object,
        )


class RunConfigurationRepository:
    """命名运行配置仓库。"""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, name: str, config: RunConfiguration) -> RunConfiguration:
        """保存命名配置，已存在时更新。

        Raises:
            RepositoryError: 保存失败时抛出
        """
        try:
            existing = await self._session.get(RunConfigurationOrm, name)
            if existing:
                existing.object_type = config.object_type
                existing.match_fields = list(config.match_fields)
                existing.master_strategy = config.master_strategy
                existing.partition_size = config.partition_size
                existing.dry_run = config.dry_run
                existing.updated_at = datetime.now(timezone.utc)
                logger.debug(f"更新命名配置: {name}")
                orm = existing
            else:
                orm = RunConfigurationOrm.from_domain(name, config)
                self._session.add(orm)
                logger.debug(f"创建命名配置: {name}")

            await self._session.flush()
            return orm.to_domain()

        except Exception as e:
            logger.error(f"保存命名配置失败: {e}")
            raise RepositoryError(f"保存命名配置失败: {e}") from e

    async def get(self, name: str) -> RunConfiguration:
        """查询命名配置。

        Raises:
            NotFoundError: 配置不存在
        """
        orm = await self._session.get(RunConfigurationOrm, name)
        if orm is None:
            raise NotFoundError(f"命名配置不存在: {name}")
        return orm.to_domain()

    async def list_names(self) -> list[str]:
        """列出所有配置名称。"""
        stmt = select(RunConfigurationOrm.name).order_by(RunConfigurationOrm.name)
        return list((await self._session.execute(stmt)).scalars())

    async def delete(self, name: str) -> None:
        """删除命名配置。

        Raises:
            NotFoundError: 配置不存在
        """
        orm = await self._session.get(RunConfigurationOrm, name)
        if orm is None:
            raise NotFoundError(f"命名配置不存在: {name}")
        await self._session.delete(orm)
        await self._session.flush()

    async def resolve(self, name: str) -> RunConfiguration:
        """解析命名配置为运行配置。

        Raises:
            ConfigurationError: 配置不存在
        """
        try:
            return await self.get(name)
        except NotFoundError as e:
            raise ConfigurationError(f"未知的命名配置: {name}") from e
