"""去重领域模型。

定义运行配置、重复组、运行结果和组明细的 Pydantic 数据模型。
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# 组明细中重复记录 ID 的分隔符
DUPLICATE_IDS_DELIMITER = ","

DEFAULT_PARTITION_SIZE = 200
DEFAULT_MASTER_STRATEGY = "OldestCreated"


class RunStatus(str, Enum):
    """运行状态枚举。"""

    RUNNING = "Running"
    COMPLETED = "Completed"
    COMPLETED_WITH_ERRORS = "CompletedWithErrors"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class MergeState(str, Enum):
    """单个重复组的合并状态机。

    成功路径: PENDING -> REPARENTING -> DELETING -> MERGED
    失败路径: 任一步骤出错 -> FAILED
    演练模式: PENDING -> DRY_RUN
    """

    PENDING = "Pending"
    REPARENTING = "Reparenting"
    DELETING = "Deleting"
    MERGED = "Merged"
    FAILED = "Failed"
    DRY_RUN = "DryRun"


class MergeStatus(str, Enum):
    """组明细中记录的合并结果。"""

    DRY_RUN = "DryRun"
    MERGED = "Merged"
    FAILED = "Failed"


class RunConfiguration(BaseModel):
    """运行配置模型。

    运行开始后只读。参数合法性由 DuplicateRunService 在扫描前校验。
    """

    object_type: str = Field(..., description="对象类型")
    match_fields: tuple[str, ...] = Field(..., description="匹配字段（有序）")
    master_strategy: str = Field(
        default=DEFAULT_MASTER_STRATEGY, description="主记录选择策略名称"
    )
    partition_size: int = Field(
        default=DEFAULT_PARTITION_SIZE, description="分区大小"
    )
    dry_run: bool = Field(default=True, description="是否为演练模式")
    configuration_name: str | None = Field(None, description="命名配置名称")

    model_config = ConfigDict(frozen=True)


class DuplicateGroup(BaseModel):
    """重复组模型。

    表示指纹相同的一组记录及其主记录。创建后不可修改。
    """

    fingerprint: str = Field(..., description="组指纹")
    object_type: str = Field(..., description="对象类型")
    member_ids: frozenset[str] = Field(..., description="组内所有记录 ID")
    master_id: str = Field(..., description="主记录 ID")
    match_score: float = Field(..., ge=0.0, le=1.0, description="匹配分数")
    field_values: dict[str, Any] = Field(
        default_factory=dict, description="匹配字段值快照（主记录）"
    )

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_members(self) -> "DuplicateGroup":
        """验证组成员和主记录。"""
        if len(self.member_ids) < 2:
            raise ValueError("重复组至少需要 2 条记录")
        if self.master_id not in self.member_ids:
            raise ValueError(f"主记录 {self.master_id} 不在组成员中")
        return self

    @property
    def duplicate_ids(self) -> list[str]:
        """非主记录 ID，按 ID 排序。"""
        return sorted(i for i in self.member_ids if i != self.master_id)

    @property
    def record_count(self) -> int:
        return len(self.member_ids)


class MergeOutcome(BaseModel):
    """单个重复组的处理结果。"""

    fingerprint: str = Field(..., description="组指纹")
    status: MergeStatus = Field(..., description="合并结果")
    records_merged: int = Field(default=0, ge=0, description="被合并（删除）的记录数")
    children_reparented: int = Field(default=0, ge=0, description="重新挂接的子记录数")
    attempts: int = Field(default=0, ge=0, description="尝试次数")
    error_message: str | None = Field(None, description="失败原因")


class RunResult(BaseModel):
    """运行结果模型。

    每次运行一条，运行开始时状态为 Running，结束时只定稿一次。
    """

    id: int = Field(..., description="运行结果 ID")
    batch_job_id: str = Field(..., description="批处理作业 ID")
    configuration_name: str | None = Field(None, description="命名配置名称")
    object_type: str = Field(..., description="对象类型")
    is_dry_run: bool = Field(..., description="是否为演练模式")
    master_strategy: str = Field(..., description="主记录选择策略")
    match_fields: list[str] = Field(default_factory=list, description="匹配字段")
    partition_size: int = Field(..., ge=1, description="分区大小")
    duplicates_found: int = Field(default=0, ge=0, description="发现的重复记录数")
    records_processed: int = Field(default=0, ge=0, description="扫描的记录数")
    records_merged: int = Field(default=0, ge=0, description="合并的记录数")
    groups_found: int = Field(default=0, ge=0, description="重复组数")
    groups_failed: int = Field(default=0, ge=0, description="合并失败的组数")
    partitions_processed: int = Field(default=0, ge=0, description="已处理的分区数")
    total_records_estimate: int = Field(default=0, ge=0, description="运行开始时的记录数估计")
    processing_time_ms: int = Field(default=0, ge=0, description="处理耗时（毫秒）")
    average_match_score: float = Field(default=0.0, ge=0.0, le=1.0, description="平均匹配分数")
    status: RunStatus = Field(..., description="运行状态")
    error_message: str | None = Field(None, description="错误信息")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: datetime | None = Field(None, description="结束时间")

    @property
    def progress_percentage(self) -> float:
        """按已扫描记录数估算的进度（0-100）。"""
        if self.status.is_terminal:
            return 100.0
        if self.total_records_estimate <= 0:
            return 0.0
        return min(100.0, self.records_processed * 100.0 / self.total_records_estimate)


class GroupDetail(BaseModel):
    """重复组明细模型。

    每个重复组一条，运行结束后长期保留。
    """

    id: int = Field(..., description="组明细 ID")
    run_result_id: int = Field(..., description="所属运行结果 ID")
    group_key: str = Field(..., description="组键（指纹）")
    record_count: int = Field(..., ge=2, description="组内记录数")
    match_score: float = Field(..., ge=0.0, le=1.0, description="匹配分数")
    field_values: dict[str, Any] = Field(default_factory=dict, description="匹配字段值快照")
    master_record_id: str = Field(..., description="主记录 ID")
    duplicate_record_ids: str = Field(default="", description="非主记录 ID（逗号分隔）")
    object_name: str = Field(..., description="对象类型")
    merge_status: MergeStatus = Field(..., description="合并结果")
    error_message: str | None = Field(None, description="失败原因")
    created_at: datetime = Field(..., description="创建时间")

    @property
    def duplicate_ids(self) -> list[str]:
        """非主记录 ID 列表。"""
        return [
            record_id
            for record_id in self.duplicate_record_ids.split(DUPLICATE_IDS_DELIMITER)
            if record_id
        ]


class ObjectStatistics(BaseModel):
    """单个对象类型的统计。"""

    total_runs: int = Field(default=0, ge=0)
    total_duplicates: int = Field(default=0, ge=0)
    total_merged: int = Field(default=0, ge=0)
    total_processed: int = Field(default=0, ge=0)


class DuplicateStatistics(BaseModel):
    """全部运行的汇总统计。"""

    total_runs: int = Field(default=0, ge=0, description="运行总数")
    total_duplicates: int = Field(default=0, ge=0, description="发现的重复记录总数")
    total_merged: int = Field(default=0, ge=0, description="合并的记录总数")
    total_processed: int = Field(default=0, ge=0, description="扫描的记录总数")
    by_object: dict[str, ObjectStatistics] = Field(
        default_factory=dict, description="按对象类型分解"
    )


class FieldConflict(BaseModel):
    """主记录与一条重复记录在某个字段上的取值差异。"""

    field: str = Field(..., description="字段名")
    master_value: Any = Field(None, description="主记录的值")
    duplicate_value: Any = Field(None, description="重复记录的值")
    is_match_field: bool = Field(default=False, description="是否为匹配字段")


class DuplicateConflicts(BaseModel):
    """一条重复记录相对主记录的全部字段差异。"""

    record_id: str = Field(..., description="重复记录 ID")
    conflicts: list[FieldConflict] = Field(default_factory=list, description="字段差异")


class MergeConflictView(BaseModel):
    """重复组合并前的字段差异视图。

    合并只保留主记录的字段值，这里列出的重复记录取值在合并后会丢失。
    """

    group_detail_id: int = Field(..., description="组明细 ID")
    object_type: str = Field(..., description="对象类型")
    master_record_id: str = Field(..., description="主记录 ID")
    match_fields: list[str] = Field(default_factory=list, description="运行的匹配字段")
    duplicates: list[DuplicateConflicts] = Field(
        default_factory=list, description="各重复记录的字段差异"
    )
    missing_record_ids: list[str] = Field(
        default_factory=list, description="已不存在的重复记录 ID"
    )
