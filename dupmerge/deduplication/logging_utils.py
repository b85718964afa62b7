"""去重运行结构化日志工具。

提供结构化日志记录功能，包含运行上下文信息。
"""

import logging

logger = logging.getLogger(__name__)


class DedupLogger:
    """去重运行结构化日志记录器。

    每条日志通过 extra 携带 event 字段和运行上下文。
    """

    def __init__(self, component: str = "runs"):
        """初始化日志记录器。

        Args:
            component: 组件名称
        """
        self.component = component
        self._logger = logging.getLogger(f"dupmerge.deduplication.{component}")

    def log_run_started(
        self,
        batch_job_id: str,
        object_type: str,
        match_fields: list[str],
        master_strategy: str,
        dry_run: bool,
        total_records_estimate: int,
    ) -> None:
        """记录运行开始事件。

        Args:
            batch_job_id: 批处理作业 ID
            object_type: 对象类型
            match_fields: 匹配字段
            master_strategy: 主记录选择策略
            dry_run: 是否为演练模式
            total_records_estimate: 记录数估计
        """
        self._logger.info(
            "去重运行开始",
            extra={
                "event": "run_started",
                "batch_job_id": batch_job_id,
                "object_type": object_type,
                "match_fields": match_fields,
                "master_strategy": master_strategy,
                "dry_run": dry_run,
                "total_records_estimate": total_records_estimate,
            },
        )

    def log_partition_absorbed(
        self,
        batch_job_id: str,
        partition_number: int,
        records: int,
        members_added: int,
    ) -> None:
        """记录分区吸收事件。"""
        self._logger.debug(
            "分区已吸收",
            extra={
                "event": "partition_absorbed",
                "batch_job_id": batch_job_id,
                "partition_number": partition_number,
                "records": records,
                "members_added": members_added,
            },
        )

    def log_group_merged(
        self,
        batch_job_id: str,
        master_id: str,
        record_count: int,
        status: str,
        children_reparented: int = 0,
    ) -> None:
        """记录重复组处理成功事件（合并或演练）。"""
        self._logger.info(
            "重复组处理完成",
            extra={
                "event": "group_merged",
                "batch_job_id": batch_job_id,
                "master_id": master_id,
                "record_count": record_count,
                "status": status,
                "children_reparented": children_reparented,
            },
        )

    def log_group_failed(
        self,
        batch_job_id: str,
        master_id: str,
        failed_state: str,
        error_message: str,
        attempts: int,
    ) -> None:
        """记录重复组合并失败事件。

        Args:
            batch_job_id: 批处理作业 ID
            master_id: 主记录 ID
            failed_state: 失败时所处的合并状态
            error_message: 错误信息
            attempts: 尝试次数
        """
        self._logger.warning(
            "重复组合并失败",
            extra={
                "event": "group_failed",
                "batch_job_id": batch_job_id,
                "master_id": master_id,
                "failed_state": failed_state,
                "error_message": error_message,
                "attempts": attempts,
            },
        )

    def log_run_finished(
        self,
        batch_job_id: str,
        status: str,
        records_processed: int,
        groups_found: int,
        duplicates_found: int,
        records_merged: int,
        processing_time_ms: int,
    ) -> None:
        """记录运行结束事件。"""
        self._logger.info(
            "去重运行结束",
            extra={
                "event": "run_finished",
                "batch_job_id": batch_job_id,
                "status": status,
                "records_processed": records_processed,
                "groups_found": groups_found,
                "duplicates_found": duplicates_found,
                "records_merged": records_merged,
                "processing_time_ms": processing_time_ms,
            },
        )

    def log_run_failed(
        self,
        batch_job_id: str,
        error_type: str,
        error_message: str,
    ) -> None:
        """记录运行失败事件。"""
        self._logger.error(
            "去重运行失败",
            extra={
                "event": "run_failed",
                "batch_job_id": batch_job_id,
                "error_type": error_type,
                "error_message": error_message,
            },
        )


# 全局日志记录器实例
_dedup_logger = DedupLogger()


def get_dedup_logger() -> DedupLogger:
    """获取去重运行日志记录器实例。

    Returns:
        DedupLogger: 日志记录器实例
    """
    return _dedup_logger
