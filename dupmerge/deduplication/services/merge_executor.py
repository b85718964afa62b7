"""重复组合并执行。

每个重复组在一个原子工作单元中完成：先把所有子关系重新挂接到主记录，
再删除非主记录。任一步骤失败时整个工作单元回滚，只影响该组。
"""

import asyncio
import logging

from returns.result import Failure, Result, Success

from dupmerge.deduplication.domain.exceptions import GroupMergeError
from dupmerge.deduplication.domain.models import (
    DuplicateGroup,
    MergeOutcome,
    MergeState,
    MergeStatus,
)
from dupmerge.records.infrastructure.repository import SqlRecordStore
from dupmerge.records.schema import SchemaIntrospector

logger = logging.getLogger(__name__)


class MergeExecutor:
    """重复组合并执行器。

    状态机：
    - 成功: Pending -> Reparenting -> Deleting -> Merged
    - 失败: 任一步骤出错 -> Failed（记录失败时所处状态）
    - 演练: Pending -> DryRun，不修改任何数据
    """

    def __init__(
        self,
        record_store: SqlRecordStore,
        introspector: SchemaIntrospector,
        max_attempts: int = 1,
        max_concurrent: int = 1,
    ) -> None:
        """初始化合并执行器。

        Args:
            record_store: 记录存储
            introspector: 对象结构内省器
            max_attempts: 单个组工作单元的最大尝试次数
            max_concurrent: 最大并发合并组数
        """
        self._record_store = record_store
        self._introspector = introspector
        self._max_attempts = max(1, max_attempts)
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def execute(
        self, group: DuplicateGroup, dry_run: bool
    ) -> Result[MergeOutcome, GroupMergeError]:
        """处理一个重复组。

        Args:
            group: 重复组
            dry_run: 是否为演练模式

        Returns:
            Success(MergeOutcome) 或 Failure(GroupMergeError)
        """
        if dry_run:
            return Success(
                MergeOutcome(
                    fingerprint=group.fingerprint,
                    status=MergeStatus.DRY_RUN,
                )
            )

        async with self._semaphore:
            last_error: GroupMergeError | None = None
            for attempt in range(1, self._max_attempts + 1):
                result = await self._merge_once(group, attempt)
                if isinstance(result, Success):
                    return result

                last_error = result.failure()
                if attempt < self._max_attempts:
                    logger.warning(
                        f"合并重复组失败，准备重试 ({attempt}/{self._max_attempts}): "
                        f"master={group.master_id}, {last_error}"
                    )

            return Failure(last_error)

    async def _merge_once(
        self, group: DuplicateGroup, attempt: int
    ) -> Result[MergeOutcome, GroupMergeError]:
        state = MergeState.PENDING
        duplicate_ids = group.duplicate_ids
        relationships = self._introspector.child_relationships_of(group.object_type)
        reparented = 0

        try:
            async with self._record_store.unit_of_work() as uow:
                state = MergeState.REPARENTING
                for relationship in relationships:
                    reparented += await uow.reparent(
                        relationship, duplicate_ids, group.master_id
                    )

                state = MergeState.DELETING
                deleted = await uow.delete(
                    group.object_type,
                    duplicate_ids,
                    guard_relationships=relationships,
                )

        except Exception as e:
            logger.error(
                f"合并重复组失败: master={group.master_id}, 状态={state.value}, "
                f"尝试={attempt}, 错误={e}"
            )
            return Failure(GroupMergeError(group.fingerprint, state.value, str(e)))

        logger.debug(
            f"重复组已合并: master={group.master_id}, 删除 {deleted} 条, "
            f"重新挂接 {reparented} 条子记录"
        )
        return Success(
            MergeOutcome(
                fingerprint=group.fingerprint,
                status=MergeStatus.MERGED,
                records_merged=deleted,
                children_reparented=reparented,
                attempts=attempt,
            )
        )
