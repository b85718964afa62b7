"""运行记录器。

RunResult 和 GroupDetail 的唯一写入方，每次写入使用独立的短事务。
"""

import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.deduplication.domain.exceptions import NotFoundError, RunStateError
from dupmerge.deduplication.domain.models import (
    DuplicateGroup,
    GroupDetail,
    MergeOutcome,
    RunConfiguration,
    RunResult,
    RunStatus,
)
from dupmerge.deduplication.infrastructure.repository import RunResultRepository

logger = logging.getLogger(__name__)

ORPHANED_RUN_MESSAGE = "进程重启前运行未结束"


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


class RunRecorder:
    """运行记录器。

    状态只能从 Running 进入一个终态（Completed / CompletedWithErrors / Failed），
    进入终态后的任何写入都会抛出 RunStateError。
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        """初始化运行记录器。

        Args:
            session_maker: 异步会话工厂
        """
        self._session_maker = session_maker

    async def start(
        self, config: RunConfiguration, total_records_estimate: int = 0
    ) -> RunResult:
        """创建 Running 状态的运行结果。"""
        async with self._session_maker() as session:
            async with session.begin():
                run = await RunResultRepository(session).create_run(
                    config, total_records_estimate
                )
        logger.info(
            f"创建运行结果: {run.batch_job_id} ({config.object_type}, "
            f"dry_run={config.dry_run})"
        )
        return run

    async def record_partition(self, run_result_id: int, size: int) -> None:
        """累加一个分区的扫描记录数。

        Raises:
            RunStateError: 运行已处于终态
        """
        async with self._session_maker() as session:
            async with session.begin():
                repository = RunResultRepository(session)
                if not await repository.increment_processed(run_result_id, size):
                    await self._raise_not_running(repository, run_result_id)

    async def record_group(
        self,
        run_result_id: int,
        group: DuplicateGroup,
        outcome: MergeOutcome,
    ) -> GroupDetail:
        """保存一个重复组的处理结果。

        Raises:
            RunStateError: 运行已处于终态
        """
        async with self._session_maker() as session:
            async with session.begin():
                repository = RunResultRepository(session)
                run = await repository.get_run(run_result_id)
                if run is None:
                    raise NotFoundError(f"运行结果不存在: {run_result_id}")
                if run.status.is_terminal:
                    raise RunStateError(
                        f"运行 {run.batch_job_id} 已结束（{run.status.value}），不能追加组明细"
                    )
                return await repository.add_group_detail(run_result_id, group, outcome)

    async def finish(self, run_result_id: int, started: float) -> RunResult:
        """根据组明细汇总统计并定稿运行。

        存在合并失败的组时状态为 CompletedWithErrors，否则为 Completed。

        Args:
            run_result_id: 运行结果 ID
            started: time.monotonic() 记录的开始时刻

        Raises:
            RunStateError: 运行已处于终态
        """
        async with self._session_maker() as session:
            async with session.begin():
                repository = RunResultRepository(session)
                aggregate = await repository.aggregate_groups(run_result_id)

                error_message = None
                status = RunStatus.COMPLETED
                if aggregate.groups_failed:
                    status = RunStatus.COMPLETED_WITH_ERRORS
                    messages = await repository.failed_group_messages(run_result_id)
                    error_message = (
                        f"{aggregate.groups_failed} 个重复组合并失败: " + "; ".join(messages)
                    )

                updated = await repository.finalize_run(
                    run_result_id,
                    status,
                    _elapsed_ms(started),
                    aggregate=aggregate,
                    error_message=error_message,
                )
                if not updated:
                    await self._raise_not_running(repository, run_result_id)

        return await self._reload(run_result_id)

    async def fail(self, run_result_id: int, message: str, started: float) -> RunResult:
        """将运行标记为 Failed。

        已写入的组明细保留，统计按已有明细汇总。

        Raises:
            RunStateError: 运行已处于终态
        """
        async with self._session_maker() as session:
            async with session.begin():
                repository = RunResultRepository(session)
                aggregate = await repository.aggregate_groups(run_result_id)
                updated = await repository.finalize_run(
                    run_result_id,
                    RunStatus.FAILED,
                    _elapsed_ms(started),
                    aggregate=aggregate,
                    error_message=message,
                )
                if not updated:
                    await self._raise_not_running(repository, run_result_id)

        logger.error(f"运行失败: run_result_id={run_result_id}, {message}")
        return await self._reload(run_result_id)

    async def recover_orphaned_runs(self) -> list[str]:
        """把上次进程退出时遗留的 Running 运行标记为 Failed。

        只在应用启动时、尚未受理任何运行之前调用。遗留的 Running 行
        会让 find_running 永远拒绝该对象类型的新运行。

        Returns:
            被标记的批处理作业 ID 列表
        """
        async with self._session_maker() as session:
            async with session.begin():
                batch_job_ids = await RunResultRepository(session).fail_running_runs(
                    ORPHANED_RUN_MESSAGE
                )

        if batch_job_ids:
            logger.warning(
                f"已将 {len(batch_job_ids)} 个遗留的 Running 运行标记为 Failed: "
                f"{', '.join(batch_job_ids)}"
            )
        return batch_job_ids

    async def _reload(self, run_result_id: int) -> RunResult:
        async with self._session_maker() as session:
            run = await RunResultRepository(session).get_run(run_result_id)
        if run is None:
            raise NotFoundError(f"运行结果不存在: {run_result_id}")
        return run

    @staticmethod
    async def _raise_not_running(
        repository: RunResultRepository, run_result_id: int
    ) -> None:
        run = await repository.get_run(run_result_id)
        if run is None:
            raise NotFoundError(f"运行结果不存在: {run_result_id}")
        raise RunStateError(
            f"运行 {run.batch_job_id} 已结束（{run.status.value}），不能再修改"
        )
