"""运行锁注册表测试。"""

from dupmerge.deduplication.services.run_lock import RunLockRegistry


class TestRunLockRegistry:
    """RunLockRegistry 测试。"""

    def test_singleton(self):
        assert RunLockRegistry() is RunLockRegistry.get_instance()

    def test_acquire_and_release(self):
        registry = RunLockRegistry.get_instance()

        assert registry.acquire("Account", "job-1") is True
        assert registry.is_locked("Account")
        assert registry.holder_of("Account") == "job-1"

        registry.release("Account", "job-1")

        assert not registry.is_locked("Account")
        assert registry.holder_of("Account") is None

    def test_second_holder_rejected(self):
        registry = RunLockRegistry.get_instance()
        registry.acquire("Account", "job-1")

        assert registry.acquire("Account", "job-2") is False
        # 同一持有者重复获取是幂等的
        assert registry.acquire("Account", "job-1") is True
        # 其他对象类型不受影响
        assert registry.acquire("Lead", "job-2") is True

    def test_release_by_non_holder_is_ignored(self):
        registry = RunLockRegistry.get_instance()
        registry.acquire("Account", "job-1")

        registry.release("Account", "job-2")

        assert registry.holder_of("Account") == "job-1"

    def test_transfer(self):
        registry = RunLockRegistry.get_instance()
        registry.acquire("Account", "pending-1")

        assert registry.transfer("Account", "pending-2", "job-1") is False
        assert registry.transfer("Account", "pending-1", "job-1") is True
        assert registry.holder_of("Account") == "job-1"

    def test_clear_all(self):
        registry = RunLockRegistry.get_instance()
        registry.acquire("Account", "job-1")
        registry.acquire("Lead", "job-2")

        registry.clear_all()

        assert not registry.is_locked("Account")
        assert not registry.is_locked("Lead")

    def test_snapshot_is_a_copy(self):
        registry = RunLockRegistry.get_instance()
        registry.acquire("Account", "job-1")

        snapshot = registry.snapshot()
        snapshot["Lead"] = "job-2"

        assert registry.snapshot() == {"Account": "job-1"}
