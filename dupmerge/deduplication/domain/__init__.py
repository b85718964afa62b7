"""去重领域模型。"""

from dupmerge.deduplication.domain.models import (
    DuplicateGroup,
    DuplicateStatistics,
    GroupDetail,
    MergeOutcome,
    MergeState,
    MergeStatus,
    ObjectStatistics,
    RunConfiguration,
    RunResult,
    RunStatus,
)

__all__ = [
    "DuplicateGroup",
    "DuplicateStatistics",
    "GroupDetail",
    "MergeOutcome",
    "MergeState",
    "MergeStatus",
    "ObjectStatistics",
    "RunConfiguration",
    "RunResult",
    "RunStatus",
]
