"""去重运行编排服务。

协调一次完整的去重运行：配置校验、权限检查、分区扫描、
汇总分组、合并或演练，以及运行结果的记录。
"""

import asyncio
import logging
import time
import uuid

from returns.result import Failure, Success
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.config import Settings, get_settings
from dupmerge.deduplication.domain.exceptions import (
    AccessDeniedError,
    ConfigurationError,
    GroupMergeError,
    RunInProgressError,
)
from dupmerge.deduplication.domain.fingerprint import FingerprintEngine
from dupmerge.deduplication.domain.models import (
    DuplicateGroup,
    MergeOutcome,
    MergeState,
    MergeStatus,
    RunConfiguration,
    RunResult,
    RunStatus,
)
from dupmerge.deduplication.domain.scoring import MatchScorer
from dupmerge.deduplication.domain.strategies import (
    MasterSelectionStrategy,
    get_strategy,
    id_sort_key,
)
from dupmerge.deduplication.infrastructure.accumulator import PartitionAccumulator
from dupmerge.deduplication.infrastructure.repository import (
    RunConfigurationRepository,
    RunResultRepository,
)
from dupmerge.deduplication.logging_utils import get_dedup_logger
from dupmerge.deduplication.services.group_resolver import GroupResolver
from dupmerge.deduplication.services.merge_executor import MergeExecutor
from dupmerge.deduplication.services.run_lock import RunLockRegistry
from dupmerge.deduplication.services.run_recorder import RunRecorder
from dupmerge.records.access import (
    OPERATION_MERGE,
    OPERATION_READ,
    AccessControl,
    AllowAllAccessControl,
)
from dupmerge.records.infrastructure.repository import SqlRecordStore
from dupmerge.records.schema import SchemaIntrospector

logger = logging.getLogger(__name__)


def _update_run_metrics(
    status: RunStatus | None = None,
    active_delta: int = 0,
    duration_seconds: float | None = None,
) -> None:
    """更新 Prometheus 运行指标。

    Args:
        status: 运行终态
        active_delta: 活跃运行数变化
        duration_seconds: 运行耗时（秒）
    """
    try:
        if not get_settings().prometheus_enabled:
            return

        from dupmerge.monitoring import metrics

        if status is not None:
            metrics.runs_total.labels(status=status.value).inc()
        if active_delta:
            metrics.active_runs.inc(active_delta)
        if duration_seconds is not None:
            metrics.run_duration_seconds.observe(duration_seconds)

    except Exception as e:
        # 指标更新失败不影响运行
        logger.debug(f"更新运行指标失败: {e}")


def _update_scan_metrics(object_type: str, records: int) -> None:
    try:
        if not get_settings().prometheus_enabled:
            return

        from dupmerge.monitoring import metrics

        metrics.records_scanned_total.labels(object_type=object_type).inc(records)

    except Exception as e:
        logger.debug(f"更新扫描指标失败: {e}")


def _update_group_metrics(outcome: MergeStatus) -> None:
    try:
        if not get_settings().prometheus_enabled:
            return

        from dupmerge.monitoring import metrics

        metrics.groups_total.labels(outcome=outcome.value).inc()

    except Exception as e:
        logger.debug(f"更新重复组指标失败: {e}")


class DuplicateRunService:
    """去重运行编排服务。

    一次运行分为两个阶段：
    1. 扫描阶段：按分区读取记录，把指纹写入累加器
    2. 合并阶段：最后一个分区吸收完之后汇总重复组，逐组合并或演练

    配置错误和权限错误在运行开始前直接抛出；扫描失败时运行被标记为
    Failed 并返回；单个组的合并失败只记录在组明细中，不影响其他组。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        introspector: SchemaIntrospector,
        access_control: AccessControl | None = None,
        settings: Settings | None = None,
        scorer: MatchScorer | None = None,
        lock_registry: RunLockRegistry | None = None,
    ) -> None:
        """初始化去重运行服务。

        Args:
            session_maker: 异步会话工厂
            introspector: 对象结构内省器
            access_control: 访问控制（为 None 时允许所有操作）
            settings: 应用配置（为 None 时使用全局配置）
            scorer: 匹配评分器（为 None 时使用精确匹配评分）
            lock_registry: 运行锁注册表（为 None 时使用全局单例）
        """
        self._session_maker = session_maker
        self._introspector = introspector
        self._access_control = access_control or AllowAllAccessControl()
        self._settings = settings or get_settings()
        self._scorer = scorer
        self._lock_registry = lock_registry or RunLockRegistry.get_instance()
        self._record_store = SqlRecordStore(session_maker)
        self._recorder = RunRecorder(session_maker)
        self._fingerprint_engine = FingerprintEngine(introspector)
        self._dedup_logger = get_dedup_logger()

    @property
    def record_store(self) -> SqlRecordStore:
        return self._record_store

    # ========== 公共接口 ==========

    async def run(self, config: RunConfiguration) -> RunResult:
        """执行一次完整的去重运行。

        Args:
            config: 运行配置

        Returns:
            RunResult: 终态运行结果

        Raises:
            ConfigurationError: 配置无效
            AccessDeniedError: 没有所需权限
            RunInProgressError: 同一对象类型已有运行在执行
        """
        run = await self.start(config)
        return await self.execute(run, config)

    async def run_named(
        self, configuration_name: str, dry_run: bool | None = None
    ) -> RunResult:
        """按命名配置执行去重运行。

        Args:
            configuration_name: 配置名称
            dry_run: 覆盖配置中的演练模式（为 None 时使用配置值）

        Raises:
            ConfigurationError: 配置不存在或无效
        """
        config = await self.resolve_configuration(configuration_name, dry_run)
        return await self.run(config)

    async def resolve_configuration(
        self, configuration_name: str, dry_run: bool | None = None
    ) -> RunConfiguration:
        """读取命名配置。"""
        async with self._session_maker() as session:
            config = await RunConfigurationRepository(session).resolve(configuration_name)
        if dry_run is not None:
            config = config.model_copy(update={"dry_run": dry_run})
        return config

    async def start(self, config: RunConfiguration) -> RunResult:
        """校验配置并创建 Running 状态的运行结果。

        成功返回时调用方持有该对象类型的运行锁，必须随后调用 execute()。

        Raises:
            ConfigurationError: 配置无效
            AccessDeniedError: 没有所需权限
            RunInProgressError: 同一对象类型已有运行在执行
        """
        self.validate_configuration(config)
        self.check_run_access(config)

        token = f"pending-{uuid.uuid4()}"
        if not self._lock_registry.acquire(config.object_type, token):
            raise RunInProgressError(config.object_type)

        try:
            async with self._session_maker() as session:
                running = await RunResultRepository(session).find_running(
                    config.object_type
                )
            if running is not None:
                raise RunInProgressError(config.object_type)

            total = await self._record_store.count(config.object_type)
            run = await self._recorder.start(config, total_records_estimate=total)

        except BaseException:
            self._lock_registry.release(config.object_type, token)
            raise

        self._lock_registry.transfer(config.object_type, token, run.batch_job_id)
        _update_run_metrics(active_delta=1)
        self._dedup_logger.log_run_started(
            batch_job_id=run.batch_job_id,
            object_type=config.object_type,
            match_fields=list(config.match_fields),
            master_strategy=config.master_strategy,
            dry_run=config.dry_run,
            total_records_estimate=total,
        )
        return run

    async def execute(
        self, run: RunResult, config: RunConfiguration | None = None
    ) -> RunResult:
        """执行已创建的运行，返回终态运行结果。

        无论成功与否都会释放运行锁。

        Args:
            run: start() 返回的运行结果
            config: 运行配置（为 None 时从运行结果还原）
        """
        started = time.monotonic()
        accumulator = PartitionAccumulator(
            self._session_maker,
            run.id,
            self._fingerprint_engine,
            page_size=self._settings.accumulator_page_size,
        )

        try:
            try:
                if config is None:
                    config = self._config_of(run)
                await self._scan(run, config, accumulator)
            except Exception as e:
                logger.exception(f"扫描失败: {run.batch_job_id}")
                self._dedup_logger.log_run_failed(
                    run.batch_job_id, type(e).__name__, str(e)
                )
                return await self._finish_failed(run, f"扫描失败: {e}", started)

            try:
                await self._merge_groups(run, config, accumulator)
            except Exception as e:
                logger.exception(f"汇总或合并阶段失败: {run.batch_job_id}")
                self._dedup_logger.log_run_failed(
                    run.batch_job_id, type(e).__name__, str(e)
                )
                return await self._finish_failed(run, f"合并阶段失败: {e}", started)

            result = await self._recorder.finish(run.id, started)
            self._record_terminal(result, started)
            return result

        finally:
            if self._settings.purge_accumulator_on_finish:
                await self._purge_quietly(accumulator)
            self._lock_registry.release(run.object_type, run.batch_job_id)
            _update_run_metrics(active_delta=-1)

    # ========== 校验 ==========

    def validate_configuration(self, config: RunConfiguration) -> MasterSelectionStrategy:
        """校验运行配置。

        Returns:
            MasterSelectionStrategy: 配置对应的主记录选择策略

        Raises:
            ConfigurationError: 配置无效
        """
        if not config.object_type or config.object_type not in self._introspector.object_types():
            raise ConfigurationError(f"未知的对象类型: {config.object_type!r}")
        if not config.match_fields:
            raise ConfigurationError("匹配字段不能为空")
        if any(not field or not field.strip() for field in config.match_fields):
            raise ConfigurationError("匹配字段名不能为空白")
        if config.partition_size <= 0:
            raise ConfigurationError(f"分区大小必须为正数: {config.partition_size}")
        return get_strategy(config.master_strategy)

    def check_run_access(self, config: RunConfiguration) -> None:
        """检查运行所需权限。

        演练模式只需要读取权限，合并模式还需要合并权限。

        Raises:
            AccessDeniedError: 没有所需权限
        """
        operations = [OPERATION_READ]
        if not config.dry_run:
            operations.append(OPERATION_MERGE)
        for operation in operations:
            if not self._access_control.check(config.object_type, operation):
                raise AccessDeniedError(config.object_type, operation)

    # ========== 内部流程 ==========

    async def _scan(
        self,
        run: RunResult,
        config: RunConfiguration,
        accumulator: PartitionAccumulator,
    ) -> None:
        partition_number = 0
        async for partition in self._record_store.iter_partitions(
            config.object_type, config.partition_size
        ):
            partition_number += 1
            added = await accumulator.absorb(partition, config.match_fields)
            await self._recorder.record_partition(run.id, len(partition))
            _update_scan_metrics(config.object_type, len(partition))
            self._dedup_logger.log_partition_absorbed(
                run.batch_job_id, partition_number, len(partition), added
            )

        logger.info(f"扫描完成: {run.batch_job_id}, 共 {partition_number} 个分区")

    async def _merge_groups(
        self,
        run: RunResult,
        config: RunConfiguration,
        accumulator: PartitionAccumulator,
    ) -> None:
        resolver = GroupResolver(
            self._record_store,
            get_strategy(config.master_strategy),
            self._scorer,
        )
        executor = MergeExecutor(
            self._record_store,
            self._introspector,
            max_attempts=self._settings.merge_max_attempts,
            max_concurrent=self._settings.max_concurrent_merges,
        )
        batch_size = self._settings.max_concurrent_merges

        pending: list[tuple[str, frozenset[str]]] = []
        async for fingerprint, member_ids in accumulator.finalize_all():
            pending.append((fingerprint, member_ids))
            if len(pending) >= batch_size:
                await self._process_batch(run, config, resolver, executor, pending)
                pending = []

        if pending:
            await self._process_batch(run, config, resolver, executor, pending)

    async def _process_batch(
        self,
        run: RunResult,
        config: RunConfiguration,
        resolver: GroupResolver,
        executor: MergeExecutor,
        batch: list[tuple[str, frozenset[str]]],
    ) -> None:
        if len(batch) == 1:
            await self._process_group(run, config, resolver, executor, *batch[0])
            return

        # 等待同批所有组结束后再抛出，运行进入终态后不能还有组在合并
        results = await asyncio.gather(
            *(
                self._process_group(run, config, resolver, executor, fp, ids)
                for fp, ids in batch
            ),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]

    async def _process_group(
        self,
        run: RunResult,
        config: RunConfiguration,
        resolver: GroupResolver,
        executor: MergeExecutor,
        fingerprint: str,
        member_ids: frozenset[str],
    ) -> None:
        try:
            group = await resolver.resolve(
                fingerprint, member_ids, config.object_type, config.match_fields
            )
        except Exception as e:
            logger.error(f"解析重复组失败: {run.batch_job_id}, 成员={sorted(member_ids)}, {e}")
            await self._record_unresolved(run, config, fingerprint, member_ids, e)
            return

        if group is None:
            logger.info(f"重复组成员不足 2 条，跳过: {run.batch_job_id}")
            return

        result = await executor.execute(group, config.dry_run)
        match result:
            case Success(outcome):
                self._dedup_logger.log_group_merged(
                    run.batch_job_id,
                    group.master_id,
                    group.record_count,
                    outcome.status.value,
                    outcome.children_reparented,
                )
            case Failure(error):
                outcome = MergeOutcome(
                    fingerprint=group.fingerprint,
                    status=MergeStatus.FAILED,
                    attempts=executor.max_attempts,
                    error_message=str(error),
                )
                self._dedup_logger.log_group_failed(
                    run.batch_job_id,
                    group.master_id,
                    error.failed_state,
                    error.message,
                    executor.max_attempts,
                )

        await self._recorder.record_group(run.id, group, outcome)
        _update_group_metrics(outcome.status)

    async def _record_unresolved(
        self,
        run: RunResult,
        config: RunConfiguration,
        fingerprint: str,
        member_ids: frozenset[str],
        error: Exception,
    ) -> None:
        """记录无法解析的重复组。

        无法读取成员时不选主记录，按最小 ID 占位并记为 Failed，
        不触碰任何数据。
        """
        placeholder = min(member_ids, key=id_sort_key)
        group = DuplicateGroup(
            fingerprint=fingerprint,
            object_type=config.object_type,
            member_ids=member_ids,
            master_id=placeholder,
            match_score=0.0,
        )
        failure = GroupMergeError(fingerprint, MergeState.PENDING.value, str(error))
        outcome = MergeOutcome(
            fingerprint=fingerprint,
            status=MergeStatus.FAILED,
            error_message=str(failure),
        )
        self._dedup_logger.log_group_failed(
            run.batch_job_id, placeholder, failure.failed_state, failure.message, 0
        )
        await self._recorder.record_group(run.id, group, outcome)
        _update_group_metrics(outcome.status)

    @staticmethod
    def _config_of(run: RunResult) -> RunConfiguration:
        """从运行结果还原运行配置。"""
        return RunConfiguration(
            object_type=run.object_type,
            match_fields=tuple(run.match_fields),
            master_strategy=run.master_strategy,
            partition_size=run.partition_size,
            dry_run=run.is_dry_run,
            configuration_name=run.configuration_name,
        )

    async def _finish_failed(
        self, run: RunResult, message: str, started: float
    ) -> RunResult:
        result = await self._recorder.fail(run.id, message, started)
        self._record_terminal(result, started)
        return result

    def _record_terminal(self, result: RunResult, started: float) -> None:
        _update_run_metrics(
            status=result.status,
            duration_seconds=time.monotonic() - started,
        )
        self._dedup_logger.log_run_finished(
            batch_job_id=result.batch_job_id,
            status=result.status.value,
            records_processed=result.records_processed,
            groups_found=result.groups_found,
            duplicates_found=result.duplicates_found,
            records_merged=result.records_merged,
            processing_time_ms=result.processing_time_ms,
        )

    async def _purge_quietly(self, accumulator: PartitionAccumulator) -> None:
        try:
            await accumulator.purge()
        except Exception as e:
            logger.warning(f"清理累加数据失败: run_result_id={accumulator.run_result_id}, {e}")
