"""去重数据库 ORM 模型。

定义运行结果、组明细、指纹累加和命名配置的 SQLAlchemy ORM 模型。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from dupmerge.database.models import Base
from dupmerge.deduplication.domain.models import (
    GroupDetail,
    MergeStatus,
    RunConfiguration,
    RunResult,
    RunStatus,
)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite 不保存时区信息，读取时假设为 UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RunResultOrm(Base):
    """运行结果 ORM 模型。

    对应 duplicate_run_results 表，每次去重运行一条。
    """

    __tablename__ = "duplicate_run_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_job_id: Mapped[str] = mapped_column(
        String(36), nullable=False, unique=True, comment="批处理作业 ID"
    )
    configuration_name: Mapped[str | None] = mapped_column(
        String(100), comment="命名配置名称"
    )
    object_type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="对象类型"
    )
    is_dry_run: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, comment="是否为演练模式"
    )
    master_strategy: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="主记录选择策略"
    )
    match_fields: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list, comment="匹配字段列表"
    )
    partition_size: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="分区大小"
    )
    duplicates_found: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="发现的重复记录数"
    )
    records_processed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="扫描的记录数"
    )
    records_merged: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="合并的记录数"
    )
    groups_found: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="重复组数"
    )
    groups_failed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="合并失败的组数"
    )
    partitions_processed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="已处理的分区数"
    )
    total_records_estimate: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="开始时的记录数估计"
    )
    processing_time_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="处理耗时（毫秒）"
    )
    average_match_score: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, comment="平均匹配分数"
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, comment="运行状态"
    )
    error_message: Mapped[str | None] = mapped_column(Text, comment="错误信息")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        server_default=func.now(),
        comment="开始时间",
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), comment="结束时间"
    )

    __table_args__ = (
        Index("idx_run_results_object_status", "object_type", "status"),
        Index("idx_run_results_started_at", "started_at"),
        {"comment": "去重运行结果表"},
    )

    def to_domain(self) -> RunResult:
        """转换为领域模型。

        Returns:
            RunResult: 领域模型实例
        """
        return RunResult(
            id=self.id,
            batch_job_id=self.batch_job_id,
            configuration_name=self.configuration_name,
            object_type=self.object_type,
            is_dry_run=self.is_dry_run,
            master_strategy=self.master_strategy,
            match_fields=list(self.match_fields or []),
            partition_size=self.partition_size,
            duplicates_found=self.duplicates_found,
            records_processed=self.records_processed,
            records_merged=self.records_merged,
            groups_found=self.groups_found,
            groups_failed=self.groups_failed,
            partitions_processed=self.partitions_processed,
            total_records_estimate=self.total_records_estimate,
            processing_time_ms=self.processing_time_ms,
            average_match_score=self.average_match_score,
            status=RunStatus(self.status),
            error_message=self.error_message,
            started_at=_as_utc(self.started_at),
            completed_at=_as_utc(self.completed_at),
        )


class GroupDetailOrm(Base):
    """重复组明细 ORM 模型。

    对应 duplicate_group_details 表，每个重复组一条。
    """

    __tablename__ = "duplicate_group_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_result_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("duplicate_run_results.id", ondelete="CASCADE"),
        nullable=False,
        comment="所属运行结果 ID",
    )
    group_key: Mapped[str] = mapped_column(Text, nullable=False, comment="组键（指纹）")
    record_count: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="组内记录数"
    )
    match_score: Mapped[float] = mapped_column(
        Float, nullable=False, comment="匹配分数"
    )
    field_values: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=dict, comment="匹配字段值快照"
    )
    master_record_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="主记录 ID"
    )
    duplicate_record_ids: Mapped[str] = mapped_column(
        Text, nullable=False, default="", comment="非主记录 ID（逗号分隔）"
    )
    object_name: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="对象类型"
    )
    merge_status: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="合并结果：DryRun, Merged, Failed"
    )
    error_message: Mapped[str | None] = mapped_column(Text, comment="失败原因")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        server_default=func.now(),
        comment="创建时间",
    )

    __table_args__ = (
        Index("idx_group_details_run_score", "run_result_id", "match_score"),
        {"comment": "去重组明细表"},
    )

    def to_domain(self) -> GroupDetail:
        """转换为领域模型。

        Returns:
            GroupDetail: 领域模型实例
        """
        return GroupDetail(
            id=self.id,
            run_result_id=self.run_result_id,
            group_key=self.group_key,
            record_count=self.record_count,
            match_score=self.match_score,
            field_values=dict(self.field_values or {}),
            master_record_id=self.master_record_id,
            duplicate_record_ids=self.duplicate_record_ids or "",
            object_name=self.object_name,
            merge_status=MergeStatus(self.merge_status),
            error_message=self.error_message,
            created_at=_as_utc(self.created_at),
        )


class FingerprintMemberOrm(Base):
    """指纹成员 ORM 模型。

    对应 duplicate_fingerprint_members 表，是分区累加器的持久化形式：
    每条记录在一次运行中只出现一次，只插入不更新。
    """

    __tablename__ = "duplicate_fingerprint_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_result_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("duplicate_run_results.id", ondelete="CASCADE"),
        nullable=False,
        comment="所属运行结果 ID",
    )
    fingerprint: Mapped[str] = mapped_column(
        String(2048), nullable=False, comment="记录指纹"
    )
    record_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="记录 ID"
    )

    __table_args__ = (
        UniqueConstraint("run_result_id", "record_id", name="uq_fingerprint_members_run_record"),
        Index("idx_fingerprint_members_run_fp", "run_result_id", "fingerprint"),
        {"comment": "分区指纹累加表"},
    )


class RunConfigurationOrm(Base):
    """命名运行配置 ORM 模型。

    对应 duplicate_run_configs 表。
    """

    __tablename__ = "duplicate_run_configs"

    name: Mapped[str] = mapped_column(
        String(100), primary_key=True, comment="配置名称"
    )
    object_type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="对象类型"
    )
    match_fields: Mapped[list] = mapped_column(
        JSON, nullable=False, comment="匹配字段列表"
    )
    master_strategy: Mapped[str] = mapped_column(
        String(50), nullable=False, comment="主记录选择策略"
    )
    partition_size: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="分区大小"
    )
    dry_run: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, comment="是否为演练模式"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        server_default=func.now(),
        comment="创建时间",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        server_default=func.now(),
        comment="更新时间",
    )

    __table_args__ = (
        {"comment": "命名去重配置表"},
    )

    def to_domain(self) -> RunConfiguration:
        """转换为领域模型。"""
        return RunConfiguration(
            object_type=self.object_type,
            match_fields=tuple(self.match_fields or ()),
            master_strategy=self.master_strategy,
            partition_size=self.partition_size,
            dry_run=self.dry_run,
            configuration_name=self.name,
        )

    @classmethod
    def from_domain(cls, name: str, config: RunConfiguration) -> "RunConfigurationOrm":
        """从领域模型创建 ORM 实例。"""
        return cls(
            name=name,
            object_type=config.object_type,
            match_fields=list(config.match_fields),
            master_strategy=config.master_strategy,
            partition_size=config.partition_size,
            dry_run=config.dry_run,
        )
