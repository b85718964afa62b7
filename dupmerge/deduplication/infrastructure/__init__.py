"""去重基础设施层。"""

from dupmerge.deduplication.infrastructure.accumulator import PartitionAccumulator
from dupmerge.deduplication.infrastructure.models import (
    FingerprintMemberOrm,
    GroupDetailOrm,
    RunConfigurationOrm,
    RunResultOrm,
)
from dupmerge.deduplication.infrastructure.repository import (
    RepositoryError,
    RunConfigurationRepository,
    RunResultRepository,
)

__all__ = [
    "FingerprintMemberOrm",
    "GroupDetailOrm",
    "PartitionAccumulator",
    "RepositoryError",
    "RunConfigurationOrm",
    "RunConfigurationRepository",
    "RunResultOrm",
    "RunResultRepository",
]
