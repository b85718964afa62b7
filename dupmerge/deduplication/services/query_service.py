"""运行查询服务。

为外部调用方提供运行结果和组明细的只读访问、分页和字典视图。
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.config import Settings, get_settings
from dupmerge.deduplication.domain.exceptions import (
    AccessDeniedError,
    ConfigurationError,
    NotFoundError,
)
from dupmerge.deduplication.domain.models import (
    DuplicateStatistics,
    GroupDetail,
    RunResult,
)
from dupmerge.deduplication.infrastructure.repository import RunResultRepository
from dupmerge.records.access import OPERATION_READ, AccessControl, AllowAllAccessControl

logger = logging.getLogger(__name__)

# 访问控制中代表运行结果和组明细的对象类型
RUN_RESULT_OBJECT = "DuplicateRunResult"
GROUP_DETAIL_OBJECT = "DuplicateGroupDetail"


class RunQueryService:
    """运行查询服务。

    每个读取操作先检查读取权限，被拒绝时在查询前抛出 AccessDeniedError。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        access_control: AccessControl | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._access_control = access_control or AllowAllAccessControl()
        self._settings = settings or get_settings()

    def _require_read(self, object_type: str) -> None:
        if not self._access_control.check(object_type, OPERATION_READ):
            raise AccessDeniedError(object_type, OPERATION_READ)

    async def get_run_result_by_job(self, batch_job_id: str) -> RunResult:
        """按批处理作业 ID 查询运行结果。

        Raises:
            AccessDeniedError: 没有读取权限
            NotFoundError: 运行结果不存在
        """
        self._require_read(RUN_RESULT_OBJECT)
        async with self._session_maker() as session:
            run = await RunResultRepository(session).get_run_by_job(batch_job_id)
        if run is None:
            raise NotFoundError(f"运行结果不存在: {batch_job_id}")
        return run

    async def get_group_count(self, run_result_id: int) -> int:
        """统计运行的组明细数。"""
        self._require_read(GROUP_DETAIL_OBJECT)
        async with self._session_maker() as session:
            return await RunResultRepository(session).count_groups(run_result_id)

    async def get_groups(
        self, run_result_id: int, page_size: int, page_number: int
    ) -> list[GroupDetail]:
        """分页查询组明细。

        按匹配分数降序、ID 升序排列，第 page_number 页（从 1 开始）
        跳过前 (page_number - 1) * page_size 条。

        Raises:
            AccessDeniedError: 没有读取权限
            ConfigurationError: 页大小或页码不是正数，或页大小超过上限
        """
        self._require_read(GROUP_DETAIL_OBJECT)
        if page_size <= 0:
            raise ConfigurationError(f"页大小必须为正数: {page_size}")
        if page_number <= 0:
            raise ConfigurationError(f"页码必须为正数: {page_number}")
        if page_size > self._settings.group_page_size_max:
            raise ConfigurationError(
                f"页大小不能超过 {self._settings.group_page_size_max}: {page_size}"
            )

        async with self._session_maker() as session:
            return await RunResultRepository(session).list_groups(
                run_result_id,
                limit=page_size,
                offset=(page_number - 1) * page_size,
            )

    @staticmethod
    def to_map(detail: GroupDetail) -> dict[str, Any]:
        """把组明细转换为字典视图，重复记录 ID 解析为列表。"""
        return {
            "id": detail.id,
            "run_result_id": detail.run_result_id,
            "group_key": detail.group_key,
            "record_count": detail.record_count,
            "match_score": detail.match_score,
            "field_values": dict(detail.field_values),
            "master_record_id": detail.master_record_id,
            "duplicate_record_ids": detail.duplicate_ids,
            "object_name": detail.object_name,
            "merge_status": detail.merge_status.value,
            "error_message": detail.error_message,
            "created_at": detail.created_at,
        }

    async def list_recent_runs(
        self, limit: int = 20, object_type: str | None = None
    ) -> list[RunResult]:
        """查询最近的运行。"""
        self._require_read(RUN_RESULT_OBJECT)
        if limit <= 0:
            raise ConfigurationError(f"limit 必须为正数: {limit}")
        async with self._session_maker() as session:
            return await RunResultRepository(session).list_recent_runs(limit, object_type)

    async def get_statistics(self) -> DuplicateStatistics:
        """汇总所有运行的统计。"""
        self._require_read(RUN_RESULT_OBJECT)
        async with self._session_maker() as session:
            return await RunResultRepository(session).get_statistics()

    async def get_progress(self, batch_job_id: str) -> dict[str, Any]:
        """查询运行进度。

        Raises:
            NotFoundError: 运行结果不存在
        """
        run = await self.get_run_result_by_job(batch_job_id)
        return {
            "batch_job_id": run.batch_job_id,
            "status": run.status.value,
            "records_processed": run.records_processed,
            "total_records_estimate": run.total_records_estimate,
            "partitions_processed": run.partitions_processed,
            "percentage": round(run.progress_percentage, 2),
        }
