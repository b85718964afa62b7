"""业务记录数据库 ORM 模型。

定义通用业务记录表的 SQLAlchemy ORM 模型。
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from dupmerge.database.models import Base
from dupmerge.records.domain.models import SourceRecord


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite 不保存时区信息，读取时假设为 UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SourceRecordOrm(Base):
    """源记录 ORM 模型。

    对应 source_records 表，所有对象类型的记录共用一张表，
    字段值以 JSON 保存。
    """

    __tablename__ = "source_records"

    id: Mapped[str] = mapped_column(
        String(255), primary_key=True, comment="记录唯一 ID"
    )
    object_type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="对象类型"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, comment="记录创建时间"
    )
    last_modified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), comment="记录最后修改时间"
    )
    fields: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=dict, comment="字段值 JSON"
    )

    __table_args__ = (
        Index("idx_source_records_type_id", "object_type", "id"),
        {"comment": "业务记录数据表"},
    )

    def to_domain(self) -> SourceRecord:
        """转换为领域模型。

        Returns:
            SourceRecord: 领域模型实例
        """
        return SourceRecord(
            id=self.id,
            object_type=self.object_type,
            created_at=_as_utc(self.created_at),
            last_modified_at=_as_utc(self.last_modified_at),
            fields=dict(self.fields or {}),
        )

    @classmethod
    def from_domain(cls, record: SourceRecord) -> "SourceRecordOrm":
        """从领域模型创建 ORM 实例。

        Args:
            record: 领域模型实例

        Returns:
            SourceRecordOrm: ORM 实例
        """
        return cls(
            id=record.id,
            object_type=record.object_type,
            created_at=record.created_at,
            last_modified_at=record.last_modified_at,
            fields=dict(record.fields),
        )
