"""create_dedup_tables

创建业务记录表、去重运行结果表、组明细表、指纹累加表和命名配置表。

Revision ID: 3f8c2a61d0b4
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "3f8c2a61d0b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """创建去重相关表。"""
    op.create_table(
        "source_records",
        sa.Column("id", sa.String(255), primary_key=True, comment="记录唯一 ID"),
        sa.Column("object_type", sa.String(100), nullable=False, comment="对象类型"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, comment="记录创建时间"),
        sa.Column("last_modified_at", sa.DateTime(timezone=True), nullable=True, comment="记录最后修改时间"),
        sa.Column("fields", sa.JSON, nullable=False, comment="字段值 JSON"),
        comment="业务记录数据表",
    )
    op.create_index("idx_source_records_type_id", "source_records", ["object_type", "id"])

    op.create_table(
        "duplicate_run_results",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("batch_job_id", sa.String(36), nullable=False, unique=True, comment="批处理作业 ID"),
        sa.Column("configuration_name", sa.String(100), nullable=True, comment="命名配置名称"),
        sa.Column("object_type", sa.String(100), nullable=False, comment="对象类型"),
        sa.Column("is_dry_run", sa.Boolean, nullable=False, comment="是否为演练模式"),
        sa.Column("master_strategy", sa.String(50), nullable=False, comment="主记录选择策略"),
        sa.Column("match_fields", sa.JSON, nullable=False, comment="匹配字段列表"),
        sa.Column("partition_size", sa.Integer, nullable=False, comment="分区大小"),
        sa.Column("duplicates_found", sa.Integer, nullable=False, server_default="0", comment="发现的重复记录数"),
        sa.Column("records_processed", sa.Integer, nullable=False, server_default="0", comment="扫描的记录数"),
        sa.Column("records_merged", sa.Integer, nullable=False, server_default="0", comment="合并的记录数"),
        sa.Column("groups_found", sa.Integer, nullable=False, server_default="0", comment="重复组数"),
        sa.Column("groups_failed", sa.Integer, nullable=False, server_default="0", comment="合并失败的组数"),
        sa.Column("partitions_processed", sa.Integer, nullable=False, server_default="0", comment="已处理的分区数"),
        sa.Column("total_records_estimate", sa.Integer, nullable=False, server_default="0", comment="开始时的记录数估计"),
        sa.Column("processing_time_ms", sa.Integer, nullable=False, server_default="0", comment="处理耗时（毫秒）"),
        sa.Column("average_match_score", sa.Float, nullable=False, server_default="0", comment="平均匹配分数"),
        sa.Column("status", sa.String(30), nullable=False, comment="运行状态"),
        sa.Column("error_message", sa.Text, nullable=True, comment="错误信息"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment="开始时间"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True, comment="结束时间"),
        comment="去重运行结果表",
    )
    op.create_index("idx_run_results_object_status", "duplicate_run_results", ["object_type", "status"])
    op.create_index("idx_run_results_started_at", "duplicate_run_results", ["started_at"])

    op.create_table(
        "duplicate_group_details",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "run_result_id",
            sa.Integer,
            sa.ForeignKey("duplicate_run_results.id", ondelete="CASCADE"),
            nullable=False,
            comment="所属运行结果 ID",
        ),
        sa.Column("group_key", sa.Text, nullable=False, comment="组键（指纹）"),
        sa.Column("record_count", sa.Integer, nullable=False, comment="组内记录数"),
        sa.Column("match_score", sa.Float, nullable=False, comment="匹配分数"),
        sa.Column("field_values", sa.JSON, nullable=False, comment="匹配字段值快照"),
        sa.Column("master_record_id", sa.String(255), nullable=False, comment="主记录 ID"),
        sa.Column("duplicate_record_ids", sa.Text, nullable=False, comment="非主记录 ID（逗号分隔）"),
        sa.Column("object_name", sa.String(100), nullable=False, comment="对象类型"),
        sa.Column("merge_status", sa.String(20), nullable=False, comment="合并结果：DryRun, Merged, Failed"),
        sa.Column("error_message", sa.Text, nullable=True, comment="失败原因"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment="创建时间"),
        comment="去重组明细表",
    )
    op.create_index("idx_group_details_run_score", "duplicate_group_details", ["run_result_id", "match_score"])

    op.create_table(
        "duplicate_fingerprint_members",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "run_result_id",
            sa.Integer,
            sa.ForeignKey("duplicate_run_results.id", ondelete="CASCADE"),
            nullable=False,
            comment="所属运行结果 ID",
        ),
        sa.Column("fingerprint", sa.String(2048), nullable=False, comment="记录指纹"),
        sa.Column("record_id", sa.String(255), nullable=False, comment="记录 ID"),
        sa.UniqueConstraint("run_result_id", "record_id", name="uq_fingerprint_members_run_record"),
        comment="分区指纹累加表",
    )
    op.create_index("idx_fingerprint_members_run_fp", "duplicate_fingerprint_members", ["run_result_id", "fingerprint"])

    op.create_table(
        "duplicate_run_configs",
        sa.Column("name", sa.String(100), primary_key=True, comment="配置名称"),
        sa.Column("object_type", sa.String(100), nullable=False, comment="对象类型"),
        sa.Column("match_fields", sa.JSON, nullable=False, comment="匹配字段列表"),
        sa.Column("master_strategy", sa.String(50), nullable=False, comment="主记录选择策略"),
        sa.Column("partition_size", sa.Integer, nullable=False, comment="分区大小"),
        sa.Column("dry_run", sa.Boolean, nullable=False, comment="是否为演练模式"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment="创建时间"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment="更新时间"),
        comment="命名去重配置表",
    )


def downgrade() -> None:
    """删除去重相关表。"""
    op.drop_table("duplicate_run_configs")
    op.drop_index("idx_fingerprint_members_run_fp", table_name="duplicate_fingerprint_members")
    op.drop_table("duplicate_fingerprint_members")
    op.drop_index("idx_group_details_run_score", table_name="duplicate_group_details")
    op.drop_table("duplicate_group_details")
    op.drop_index("idx_run_results_started_at", table_name="duplicate_run_results")
    op.drop_index("idx_run_results_object_status", table_name="duplicate_run_results")
    op.drop_table("duplicate_run_results")
    op.drop_index("idx_source_records_type_id", table_name="source_records")
    op.drop_table("source_records")
