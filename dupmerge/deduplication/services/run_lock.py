"""运行锁注册表。

保证同一进程内每个对象类型同时只有一个去重运行。
"""

import logging
import threading

logger = logging.getLogger(__name__)


class RunLockRegistry:
    """运行锁注册表单例。

    记录每个对象类型当前持有锁的批处理作业 ID。
    使用线程锁确保并发安全。
    """

    _instance: "RunLockRegistry | None" = None
    _lock = threading.Lock()
    _initialized = False

    def __new__(cls) -> "RunLockRegistry":
        """实现单例模式。"""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        """初始化运行锁注册表。"""
        if not RunLockRegistry._initialized:
            self._holders: dict[str, str] = {}
            self._registry_lock = threading.RLock()
            RunLockRegistry._initialized = True
            logger.debug("RunLockRegistry 单例已初始化")

    @classmethod
    def get_instance(cls) -> "RunLockRegistry":
        """获取 RunLockRegistry 单例实例。"""
        return cls()

    def acquire(self, object_type: str, holder: str) -> bool:
        """尝试获取对象类型的运行锁。

        Args:
            object_type: 对象类型
            holder: 持有者标识（通常为批处理作业 ID）

        Returns:
            bool: 获取成功返回 True，已被其他持有者占用返回 False
        """
        with self._registry_lock:
            current = self._holders.get(object_type)
            if current is not None and current != holder:
                return False
            self._holders[object_type] = holder
        logger.debug(f"获取运行锁: {object_type} -> {holder}")
        return True

    def transfer(self, object_type: str, from_holder: str, to_holder: str) -> bool:
        """把锁转交给新的持有者。

        Returns:
            bool: 当前持有者为 from_holder 时返回 True
        """
        with self._registry_lock:
            if self._holders.get(object_type) != from_holder:
                return False
            self._holders[object_type] = to_holder
            return True

    def release(self, object_type: str, holder: str) -> None:
        """释放运行锁，只有当前持有者可以释放。"""
        with self._registry_lock:
            if self._holders.get(object_type) == holder:
                del self._holders[object_type]
                logger.debug(f"释放运行锁: {object_type} <- {holder}")

    def holder_of(self, object_type: str) -> str | None:
        with self._registry_lock:
            return self._holders.get(object_type)

    def is_locked(self, object_type: str) -> bool:
        with self._registry_lock:
            return object_type in self._holders

    def clear_all(self) -> None:
        """清空所有锁。"""
        with self._registry_lock:
            self._holders.clear()
        logger.info("清空所有运行锁")

    def snapshot(self) -> dict[str, str]:
        """返回当前所有锁的副本（对象类型 -> 持有者）。"""
        with self._registry_lock:
            return dict(self._holders)
