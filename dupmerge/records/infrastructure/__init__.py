"""业务记录基础设施层。"""

from dupmerge.records.infrastructure.models import SourceRecordOrm

__all__ = ["SourceRecordOrm"]
