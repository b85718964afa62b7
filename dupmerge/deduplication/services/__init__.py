"""去重服务层。"""

from dupmerge.deduplication.services.deduplication_service import DuplicateRunService
from dupmerge.deduplication.services.group_resolver import GroupResolver
from dupmerge.deduplication.services.merge_executor import MergeExecutor
from dupmerge.deduplication.services.query_service import RunQueryService
from dupmerge.deduplication.services.run_lock import RunLockRegistry
from dupmerge.deduplication.services.run_recorder import RunRecorder

__all__ = [
    "DuplicateRunService",
    "GroupResolver",
    "MergeExecutor",
    "RunLockRegistry",
    "RunQueryService",
    "RunRecorder",
]
