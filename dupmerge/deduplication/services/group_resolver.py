"""重复组解析。

把累加器产出的 (指纹, 成员 ID) 解析为带主记录的重复组。
"""

import logging
from collections.abc import Iterable, Sequence

from dupmerge.deduplication.domain.models import DuplicateGroup
from dupmerge.deduplication.domain.scoring import ExactMatchScorer, MatchScorer
from dupmerge.deduplication.domain.strategies import MasterSelectionStrategy
from dupmerge.records.infrastructure.repository import SqlRecordStore

logger = logging.getLogger(__name__)


class GroupResolver:
    """重复组解析器。

    读取组成员的当前数据，选择主记录并计算匹配分数。
    扫描之后已被删除的成员会被忽略。
    """

    def __init__(
        self,
        record_store: SqlRecordStore,
        strategy: MasterSelectionStrategy,
        scorer: MatchScorer | None = None,
    ) -> None:
        self._record_store = record_store
        self._strategy = strategy
        self._scorer = scorer or ExactMatchScorer()

    async def resolve(
        self,
        fingerprint: str,
        member_ids: Iterable[str],
        object_type: str,
        match_fields: Sequence[str],
    ) -> DuplicateGroup | None:
        """解析一个重复组。

        Args:
            fingerprint: 组指纹
            member_ids: 成员记录 ID
            object_type: 对象类型
            match_fields: 匹配字段

        Returns:
            重复组；仍存在的成员少于 2 条时返回 None
        """
        member_ids = set(member_ids)
        records = await self._record_store.fetch(object_type, sorted(member_ids))

        if len(records) < len(member_ids):
            logger.info(
                f"重复组部分成员已不存在: 期望 {len(member_ids)} 条, 实际 {len(records)} 条"
            )
        if len(records) < 2:
            return None

        master = self._strategy.select(records)
        return DuplicateGroup(
            fingerprint=fingerprint,
            object_type=object_type,
            member_ids=frozenset(r.id for r in records),
            master_id=master.id,
            match_score=self._scorer.score(fingerprint, records),
            field_values={field: master.value_of(field) for field in match_fields},
        )
