"""重复组人工复核服务。

演练运行或合并失败留下的组明细可以在这里查看字段差异，
并由操作员指定主记录后单独合并。
"""

import logging
import uuid
from typing import Any

from returns.result import Failure, Success
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.config import Settings, get_settings
from dupmerge.deduplication.domain.exceptions import (
    AccessDeniedError,
    ConfigurationError,
    NotFoundError,
    RunInProgressError,
    RunStateError,
)
from dupmerge.deduplication.domain.models import (
    DuplicateConflicts,
    DuplicateGroup,
    FieldConflict,
    GroupDetail,
    MergeConflictView,
    MergeOutcome,
    MergeStatus,
    RunResult,
)
from dupmerge.deduplication.infrastructure.repository import RunResultRepository
from dupmerge.deduplication.logging_utils import get_dedup_logger
from dupmerge.deduplication.services.deduplication_service import _update_group_metrics
from dupmerge.deduplication.services.merge_executor import MergeExecutor
from dupmerge.deduplication.services.query_service import GROUP_DETAIL_OBJECT
from dupmerge.deduplication.services.run_lock import RunLockRegistry
from dupmerge.records.access import (
    OPERATION_MERGE,
    OPERATION_READ,
    AccessControl,
    AllowAllAccessControl,
)
from dupmerge.records.domain.models import SourceRecord
from dupmerge.records.infrastructure.repository import SqlRecordStore
from dupmerge.records.schema import SchemaIntrospector

logger = logging.getLogger(__name__)

# 可以人工合并的组明细状态
REVIEWABLE_STATUSES = (MergeStatus.DRY_RUN, MergeStatus.FAILED)


def _comparable(value: Any) -> Any:
    # None 和空白字符串视为同一个空值
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def field_conflicts(
    master: SourceRecord, duplicate: SourceRecord, match_fields: list[str]
) -> list[FieldConflict]:
    """列出两条记录取值不同的字段，按字段名排序。"""
    conflicts = []
    for field in sorted(set(master.fields) | set(duplicate.fields)):
        master_value = master.value_of(field)
        duplicate_value = duplicate.value_of(field)
        if _comparable(master_value) == _comparable(duplicate_value):
            continue
        conflicts.append(
            FieldConflict(
                field=field,
                master_value=master_value,
                duplicate_value=duplicate_value,
                is_match_field=field in match_fields,
            )
        )
    return conflicts


class GroupReviewService:
    """重复组人工复核服务。

    合并与去重运行共用对象类型的运行锁，复核合并期间不能启动新运行，
    反之亦然。复核合并只改写组明细，不改变所属运行的统计。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        introspector: SchemaIntrospector,
        access_control: AccessControl | None = None,
        settings: Settings | None = None,
        lock_registry: RunLockRegistry | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._introspector = introspector
        self._access_control = access_control or AllowAllAccessControl()
        self._settings = settings or get_settings()
        self._lock_registry = lock_registry or RunLockRegistry.get_instance()
        self._record_store = SqlRecordStore(session_maker)
        self._dedup_logger = get_dedup_logger()

    def _require(self, object_type: str, *operations: str) -> None:
        for operation in operations:
            if not self._access_control.check(object_type, operation):
                raise AccessDeniedError(object_type, operation)

    async def _load(self, group_detail_id: int) -> tuple[GroupDetail, RunResult]:
        async with self._session_maker() as session:
            repository = RunResultRepository(session)
            detail = await repository.get_group_detail(group_detail_id)
            if detail is None:
                raise NotFoundError(f"组明细不存在: {group_detail_id}")
            run = await repository.get_run(detail.run_result_id)
        if run is None:
            raise NotFoundError(f"运行结果不存在: {detail.run_result_id}")
        return detail, run

    async def get_conflicts(self, group_detail_id: int) -> MergeConflictView:
        """查看重复组合并前主记录与各重复记录的字段差异。

        只读，不修改任何数据。

        Raises:
            AccessDeniedError: 没有读取权限
            NotFoundError: 组明细或主记录不存在
        """
        self._require(GROUP_DETAIL_OBJECT, OPERATION_READ)
        detail, run = await self._load(group_detail_id)
        self._require(detail.object_name, OPERATION_READ)

        duplicate_ids = detail.duplicate_ids
        records = {
            record.id: record
            for record in await self._record_store.fetch(
                detail.object_name, [detail.master_record_id, *duplicate_ids]
            )
        }
        master = records.get(detail.master_record_id)
        if master is None:
            raise NotFoundError(f"主记录不存在: {detail.master_record_id}")

        return MergeConflictView(
            group_detail_id=detail.id,
            object_type=detail.object_name,
            master_record_id=master.id,
            match_fields=list(run.match_fields),
            duplicates=[
                DuplicateConflicts(
                    record_id=record_id,
                    conflicts=field_conflicts(master, records[record_id], run.match_fields),
                )
                for record_id in duplicate_ids
                if record_id in records
            ],
            missing_record_ids=[i for i in duplicate_ids if i not in records],
        )

    async def merge_group(
        self, group_detail_id: int, master_record_id: str | None = None
    ) -> GroupDetail:
        """合并一个已复核的重复组。

        Args:
            group_detail_id: 组明细 ID（状态必须为 DryRun 或 Failed）
            master_record_id: 操作员指定的主记录（为 None 时沿用组明细中的主记录）

        Returns:
            GroupDetail: 更新后的组明细

        Raises:
            AccessDeniedError: 没有读取或合并权限
            NotFoundError: 组明细或主记录不存在
            ConfigurationError: 指定的主记录不在组内，或组内已没有可合并的记录
            RunStateError: 组明细已合并
            RunInProgressError: 同一对象类型有运行在执行
        """
        self._require(GROUP_DETAIL_OBJECT, OPERATION_READ)
        detail, run = await self._load(group_detail_id)
        object_type = detail.object_name
        self._require(object_type, OPERATION_READ, OPERATION_MERGE)

        if detail.merge_status not in REVIEWABLE_STATUSES:
            raise RunStateError(
                f"组明细 {group_detail_id} 状态为 {detail.merge_status.value}，不能再次合并"
            )

        members = [detail.master_record_id, *detail.duplicate_ids]
        master_id = master_record_id or detail.master_record_id
        if master_id not in members:
            raise ConfigurationError(f"主记录 {master_id} 不在重复组中")

        token = f"review-{uuid.uuid4()}"
        if not self._lock_registry.acquire(object_type, token):
            raise RunInProgressError(object_type)

        try:
            async with self._session_maker() as session:
                if await RunResultRepository(session).find_running(object_type):
                    raise RunInProgressError(object_type)

            present = {
                record.id
                for record in await self._record_store.fetch(object_type, members)
            }
            if master_id not in present:
                raise NotFoundError(f"主记录不存在: {master_id}")
            if len(present) < 2:
                raise ConfigurationError(f"组明细 {group_detail_id} 已没有可合并的重复记录")

            group = DuplicateGroup(
                fingerprint=detail.group_key,
                object_type=object_type,
                member_ids=frozenset(present),
                master_id=master_id,
                match_score=detail.match_score,
                field_values=detail.field_values,
            )
            outcome = await self._execute(run, group)

            async with self._session_maker() as session:
                async with session.begin():
                    repository = RunResultRepository(session)
                    updated = await repository.update_group_outcome(
                        group_detail_id,
                        master_id,
                        sorted(i for i in members if i != master_id),
                        outcome,
                    )
                    if not updated:
                        raise RunStateError(f"组明细 {group_detail_id} 已被其他操作合并")
                    result = await repository.get_group_detail(group_detail_id)

        finally:
            self._lock_registry.release(object_type, token)

        _update_group_metrics(outcome.status)
        logger.info(
            f"人工合并重复组: detail={group_detail_id}, master={master_id}, "
            f"结果={outcome.status.value}"
        )
        return result

    async def _execute(self, run: RunResult, group: DuplicateGroup) -> MergeOutcome:
        executor = MergeExecutor(
            self._record_store,
            self._introspector,
            max_attempts=self._settings.merge_max_attempts,
        )
        match await executor.execute(group, dry_run=False):
            case Success(outcome):
                self._dedup_logger.log_group_merged(
                    run.batch_job_id,
                    group.master_id,
                    group.record_count,
                    outcome.status.value,
                    outcome.children_reparented,
                )
                return outcome
            case Failure(error):
                self._dedup_logger.log_group_failed(
                    run.batch_job_id,
                    group.master_id,
                    error.failed_state,
                    error.message,
                    executor.max_attempts,
                )
                return MergeOutcome(
                    fingerprint=group.fingerprint,
                    status=MergeStatus.FAILED,
                    attempts=executor.max_attempts,
                    error_message=str(error),
                )
