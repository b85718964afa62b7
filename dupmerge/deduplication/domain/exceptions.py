"""去重引擎异常定义。"""

from dupmerge.records.infrastructure.repository import ValidationFailure


class DedupError(Exception):
    """去重引擎错误基类。"""

    pass


class ConfigurationError(DedupError):
    """运行配置或查询参数无效。

    在开始扫描之前抛出。
    """

    pass


class AccessDeniedError(DedupError):
    """访问控制拒绝了查询或合并操作。"""

    def __init__(self, object_type: str, operation: str) -> None:
        self.object_type = object_type
        self.operation = operation
        super().__init__(f"没有 {object_type} 的 {operation} 权限")


class NotFoundError(DedupError):
    """资源未找到错误。"""

    pass


class RunInProgressError(DedupError):
    """同一对象类型已有运行在执行。"""

    def __init__(self, object_type: str) -> None:
        self.object_type = object_type
        super().__init__(f"对象类型 {object_type} 已有正在执行的去重运行")


class RunStateError(DedupError):
    """运行状态不允许当前操作。"""

    pass


class GroupMergeError(DedupError):
    """单个重复组合并失败。

    只影响该组，不中断同一运行中其他组的处理。
    """

    def __init__(self, fingerprint: str, failed_state: str, message: str) -> None:
        self.fingerprint = fingerprint
        self.failed_state = failed_state
        self.message = message
        super().__init__(f"[{failed_state}] {message}")


__all__ = [
    "GroupMergeError",
    "DedupError",
    "ConfigurationError",
    "AccessDeniedError",
    "NotFoundError",
    "RunInProgressError",
    "RunStateError",
    "ValidationFailure",
]
