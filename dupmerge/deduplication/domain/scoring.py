"""重复组匹配评分。"""

from collections.abc import Sequence
from typing import Protocol

from dupmerge.records.domain.models import SourceRecord


class MatchScorer(Protocol):
    """匹配评分接口，返回 0-1 之间的分数。"""

    def score(self, fingerprint: str, records: Sequence[SourceRecord]) -> float:
        ...


class ExactMatchScorer:
    """精确指纹匹配评分。

    同一组内记录的指纹完全相同，分数固定为 1.0。
    """

    def score(self, fingerprint: str, records: Sequence[SourceRecord]) -> float:  # noqa: ARG002
        return 1.0
