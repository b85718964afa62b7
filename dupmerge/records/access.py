"""访问控制。

在查询和合并之前检查调用方是否具有对应权限。
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

OPERATION_READ = "read"
OPERATION_MERGE = "merge"


class AccessControl(Protocol):
    """访问控制接口。"""

    def check(self, object_type: str, operation: str) -> bool:
        """检查是否允许对对象类型执行操作。"""
        ...


class AllowAllAccessControl:
    """允许所有操作的访问控制实现。"""

    def check(self, object_type: str, operation: str) -> bool:  # noqa: ARG002
        return True


class StaticAccessControl:
    """基于拒绝列表的访问控制实现。

    denied 中的 (object_type, operation) 组合会被拒绝，
    object_type 为 "*" 时对所有对象类型生效。
    """

    def __init__(self, denied: set[tuple[str, str]] | None = None) -> None:
        self._denied = set(denied or set())

    def deny(self, object_type: str, operation: str) -> None:
        self._denied.add((object_type, operation))

    def check(self, object_type: str, operation: str) -> bool:
        allowed = (
            (object_type, operation) not in self._denied
            and ("*", operation) not in self._denied
        )
        if not allowed:
            logger.info(f"访问被拒绝: {object_type}.{operation}")
        return allowed
