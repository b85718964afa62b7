"""重复记录检测与合并模块。

提供分区扫描、指纹分组、主记录选择、合并执行和运行结果记录功能。
"""

from dupmerge.deduplication.domain.models import (
    DuplicateGroup,
    GroupDetail,
    MergeStatus,
    RunConfiguration,
    RunResult,
    RunStatus,
)

__all__ = [
    "DuplicateGroup",
    "GroupDetail",
    "MergeStatus",
    "RunConfiguration",
    "RunResult",
    "RunStatus",
]
