"""去重运行编排服务测试。"""

import asyncio
from unittest.mock import patch

import pytest

from dupmerge.deduplication.domain.exceptions import (
    AccessDeniedError,
    ConfigurationError,
    RunInProgressError,
)
from dupmerge.deduplication.domain.models import MergeStatus, RunConfiguration, RunStatus
from dupmerge.deduplication.infrastructure.repository import RunConfigurationRepository
from dupmerge.deduplication.services.deduplication_service import DuplicateRunService
from dupmerge.deduplication.services.group_resolver import GroupResolver
from dupmerge.deduplication.services.query_service import RunQueryService
from dupmerge.deduplication.services.run_lock import RunLockRegistry
from dupmerge.deduplication.services.run_recorder import RunRecorder
from dupmerge.records.access import OPERATION_MERGE, OPERATION_READ, StaticAccessControl
from dupmerge.records.infrastructure.repository import (
    RecordUnitOfWork,
    SqlRecordStore,
    ValidationFailure,
)


@pytest.fixture
def service(session_maker, introspector, test_settings) -> DuplicateRunService:
    return DuplicateRunService(
        session_maker=session_maker,
        introspector=introspector,
        settings=test_settings,
    )


@pytest.fixture
def query_service(session_maker, test_settings) -> RunQueryService:
    return RunQueryService(session_maker, settings=test_settings)


def _config(match_fields, dry_run: bool, **overrides) -> RunConfiguration:
    values = {
        "object_type": "Account",
        "match_fields": match_fields,
        "master_strategy": "OldestCreated",
        "partition_size": 2,
        "dry_run": dry_run,
    }
    values.update(overrides)
    return RunConfiguration(**values)


class TestSixRecordScenario:
    """三对重复 Account 的完整运行测试。"""

    @pytest.mark.asyncio
    async def test_merge_run(self, service, record_store, six_accounts, match_fields):
        """测试合并模式：6 条扫描、3 条重复、合并后剩 3 条。"""
        await record_store.add_records(six_accounts)

        result = await service.run(_config(match_fields, dry_run=False))

        assert result.status == RunStatus.COMPLETED
        assert result.is_dry_run is False
        assert result.records_processed == 6
        assert result.partitions_processed == 3
        assert result.groups_found == 3
        assert result.duplicates_found == 3
        assert result.records_merged == 3
        assert result.average_match_score == 1.0
        assert await record_store.count("Account") == 3

        survivors = await record_store.fetch("Account", ["001", "003", "006"])
        assert len(survivors) == 3

    @pytest.mark.asyncio
    async def test_unique_record_untouched(self, service, record_store, six_accounts, unique_account, match_fields):
        """测试唯一记录不受影响。"""
        await record_store.add_records(six_accounts + [unique_account])

        result = await service.run(_config(match_fields, dry_run=False))

        assert result.records_processed == 7
        assert result.duplicates_found == 3
        assert await record_store.count("Account") == 4
        assert await record_store.fetch("Account", ["007"])

    @pytest.mark.asyncio
    async def test_dry_run(self, service, record_store, six_accounts, contacts_for, match_fields):
        """测试演练模式：记录数不变、合并数为 0、仍发现重复。"""
        await record_store.add_records(six_accounts + contacts_for("002", "004"))

        result = await service.run(_config(match_fields, dry_run=True))

        assert result.status == RunStatus.COMPLETED
        assert result.is_dry_run is True
        assert result.records_merged == 0
        assert result.duplicates_found == 3
        assert result.records_processed == 6
        assert await record_store.count("Account") == 6
        contacts = await record_store.fetch("Contact", ["C-002", "C-004"])
        assert {c.fields["AccountId"] for c in contacts} == {"002", "004"}

    @pytest.mark.asyncio
    async def test_children_follow_master(self, service, record_store, six_accounts, contacts_for, match_fields):
        """测试合并后子记录指向主记录。"""
        await record_store.add_records(six_accounts + contacts_for("002", "004", "005"))

        await service.run(_config(match_fields, dry_run=False))

        contacts = await record_store.fetch("Contact", ["C-002", "C-004", "C-005"])
        assert {c.id: c.fields["AccountId"] for c in contacts} == {
            "C-002": "001",
            "C-004": "003",
            "C-005": "006",
        }

    @pytest.mark.asyncio
    async def test_group_details_recorded(self, service, query_service, record_store, six_accounts, match_fields):
        """测试每个重复组写入一条组明细。"""
        await record_store.add_records(six_accounts)

        result = await service.run(_config(match_fields, dry_run=True))
        details = await query_service.get_groups(result.id, page_size=10, page_number=1)

        assert len(details) == 3
        assert {d.master_record_id for d in details} == {"001", "003", "006"}
        assert all(d.merge_status == MergeStatus.DRY_RUN for d in details)
        assert all(d.record_count == 2 for d in details)

    @pytest.mark.asyncio
    async def test_partition_size_does_not_change_result(self, service, record_store, six_accounts, unique_account, match_fields):
        """测试分区大小不影响分组结果。"""
        await record_store.add_records(six_accounts + [unique_account])

        results = []
        for size in (1, 3, 100):
            results.append(
                await service.run(_config(match_fields, dry_run=True, partition_size=size))
            )

        assert {r.duplicates_found for r in results} == {3}
        assert {r.groups_found for r in results} == {3}
        assert [r.partitions_processed for r in results] == [7, 3, 1]


class TestFailureIsolation:
    """单组失败隔离测试。"""

    @pytest.mark.asyncio
    async def test_failed_group_does_not_stop_others(self, service, query_service, record_store, six_accounts, contacts_for, match_fields):
        """测试一组合并失败时其他组继续处理。"""
        await record_store.add_records(six_accounts + contacts_for("004"))
        original_delete = RecordUnitOfWork.delete

        async def rejecting_delete(self, object_type, ids, guard_relationships=()):
            if "004" in ids:
                raise ValidationFailure("记录已被锁定")
            return await original_delete(self, object_type, ids, guard_relationships)

        with patch.object(RecordUnitOfWork, "delete", rejecting_delete):
            result = await service.run(_config(match_fields, dry_run=False))

        assert result.status == RunStatus.COMPLETED_WITH_ERRORS
        assert result.groups_failed == 1
        assert result.duplicates_found == 3
        assert result.records_merged == 2
        assert "记录已被锁定" in result.error_message
        assert await record_store.count("Account") == 4

        # 失败组的重新挂接已回滚
        contact = (await record_store.fetch("Contact", ["C-004"]))[0]
        assert contact.fields["AccountId"] == "004"

        details = await query_service.get_groups(result.id, page_size=10, page_number=1)
        failed = [d for d in details if d.merge_status == MergeStatus.FAILED]
        assert len(failed) == 1
        assert failed[0].master_record_id == "003"
        assert "Deleting" in failed[0].error_message

    @pytest.mark.asyncio
    async def test_scan_failure_marks_run_failed(self, service, record_store, six_accounts, match_fields):
        """测试扫描失败时运行被标记为 Failed 并返回。"""
        await record_store.add_records(six_accounts)

        async def broken_partitions(self, object_type, partition_size):
            yield six_accounts[:2]
            raise ConnectionError("数据源断开")

        with patch.object(SqlRecordStore, "iter_partitions", broken_partitions):
            result = await service.run(_config(match_fields, dry_run=False))

        assert result.status == RunStatus.FAILED
        assert "数据源断开" in result.error_message
        assert result.records_processed == 2
        assert result.records_merged == 0
        assert await record_store.count("Account") == 6
        assert not RunLockRegistry.get_instance().is_locked("Account")

    @pytest.mark.asyncio
    async def test_unresolvable_group_recorded_while_others_merge(self, session_maker, introspector, test_settings, query_service, record_store, six_accounts, match_fields):
        """测试并发批次中某组无法解析时记为失败，同批其他组照常合并。"""
        await record_store.add_records(six_accounts)
        settings = test_settings.model_copy(update={"max_concurrent_merges": 3})
        service = DuplicateRunService(session_maker, introspector, settings=settings)
        original_resolve = GroupResolver.resolve

        async def flaky_resolve(self, fingerprint, member_ids, object_type, match_fields):
            member_ids = frozenset(member_ids)
            if "001" in member_ids:
                raise ConnectionError("读取成员失败")
            await asyncio.sleep(0.05 if "003" in member_ids else 0.15)
            return await original_resolve(self, fingerprint, member_ids, object_type, match_fields)

        with patch.object(GroupResolver, "resolve", flaky_resolve):
            result = await service.run(_config(match_fields, dry_run=False))

        assert result.status == RunStatus.COMPLETED_WITH_ERRORS
        assert result.groups_failed == 1
        assert await record_store.count("Account") == 4

        details = await query_service.get_groups(result.id, page_size=10, page_number=1)
        assert len(details) == 3
        failed = [d for d in details if d.merge_status == MergeStatus.FAILED]
        assert len(failed) == 1
        assert failed[0].master_record_id == "001"
        assert "[Pending]" in failed[0].error_message
        assert "读取成员失败" in failed[0].error_message

        await asyncio.sleep(0.3)
        assert await record_store.count("Account") == 4

    @pytest.mark.asyncio
    async def test_failed_run_waits_for_batch_siblings(self, session_maker, introspector, test_settings, query_service, record_store, six_accounts, match_fields):
        """测试运行失败时同批其他组已结束，终态之后不再有删除。"""
        await record_store.add_records(six_accounts)
        settings = test_settings.model_copy(update={"max_concurrent_merges": 3})
        service = DuplicateRunService(session_maker, introspector, settings=settings)
        original_resolve = GroupResolver.resolve
        original_record_group = RunRecorder.record_group

        async def slow_resolve(self, fingerprint, member_ids, object_type, match_fields):
            member_ids = frozenset(member_ids)
            if "001" not in member_ids:
                await asyncio.sleep(0.05 if "003" in member_ids else 0.15)
            return await original_resolve(self, fingerprint, member_ids, object_type, match_fields)

        async def broken_record_group(self, run_result_id, group, outcome):
            if group.master_id == "001":
                raise ConnectionError("写入组明细失败")
            return await original_record_group(self, run_result_id, group, outcome)

        with patch.object(GroupResolver, "resolve", slow_resolve), patch.object(
            RunRecorder, "record_group", broken_record_group
        ):
            result = await service.run(_config(match_fields, dry_run=False))
            remaining = await record_store.count("Account")
            await asyncio.sleep(0.3)

            assert await record_store.count("Account") == remaining

        assert result.status == RunStatus.FAILED
        assert "写入组明细失败" in result.error_message
        assert remaining == 3
        assert not RunLockRegistry.get_instance().is_locked("Account")

        details = await query_service.get_groups(result.id, page_size=10, page_number=1)
        assert sorted(d.master_record_id for d in details) == ["003", "006"]

    @pytest.mark.asyncio
    async def test_config_rebuild_failure_releases_lock(self, service, query_service, match_fields):
        """测试从运行结果还原配置失败时运行被标记为 Failed 并释放锁。"""
        run = await service.start(_config(match_fields, dry_run=True))

        with patch.object(
            DuplicateRunService, "_config_of", side_effect=ValueError("配置已损坏")
        ):
            result = await service.execute(run)

        assert result.status == RunStatus.FAILED
        assert "配置已损坏" in result.error_message
        assert not RunLockRegistry.get_instance().is_locked("Account")
        assert (await query_service.get_run_result_by_job(run.batch_job_id)).status == RunStatus.FAILED


class TestConfigurationValidation:
    """配置校验测试。"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"object_type": "Unknown"},
            {"match_fields": ()},
            {"match_fields": ("Name", " ")},
            {"partition_size": 0},
            {"partition_size": -5},
            {"master_strategy": "Random"},
        ],
    )
    async def test_invalid_configuration_rejected_before_scan(self, service, query_service, overrides, match_fields):
        """测试无效配置在扫描前被拒绝且不创建运行结果。"""
        with pytest.raises(ConfigurationError):
            await service.run(_config(**{"match_fields": match_fields, **overrides}, dry_run=True))

        assert await query_service.list_recent_runs() == []


class TestAccessControl:
    """运行权限测试。"""

    @pytest.mark.asyncio
    async def test_merge_denied(self, session_maker, introspector, test_settings, query_service, record_store, six_accounts, match_fields):
        """测试没有合并权限时合并运行被拒绝，演练运行仍可执行。"""
        await record_store.add_records(six_accounts)
        service = DuplicateRunService(
            session_maker,
            introspector,
            access_control=StaticAccessControl({("Account", OPERATION_MERGE)}),
            settings=test_settings,
        )

        with pytest.raises(AccessDeniedError):
            await service.run(_config(match_fields, dry_run=False))

        assert await query_service.list_recent_runs() == []
        assert await record_store.count("Account") == 6

        result = await service.run(_config(match_fields, dry_run=True))
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_read_denied(self, session_maker, introspector, test_settings, match_fields):
        service = DuplicateRunService(
            session_maker,
            introspector,
            access_control=StaticAccessControl({("Account", OPERATION_READ)}),
            settings=test_settings,
        )

        with pytest.raises(AccessDeniedError):
            await service.run(_config(match_fields, dry_run=True))


class TestRunExclusivity:
    """同一对象类型运行互斥测试。"""

    @pytest.mark.asyncio
    async def test_second_run_rejected_while_running(self, service, record_store, six_accounts, match_fields):
        """测试运行执行期间同一对象类型的新运行被拒绝。"""
        await record_store.add_records(six_accounts)
        config = _config(match_fields, dry_run=True)

        run = await service.start(config)
        with pytest.raises(RunInProgressError):
            await service.start(config)

        result = await service.execute(run, config)
        assert result.status == RunStatus.COMPLETED

        # 锁释放后可以再次运行
        again = await service.run(config)
        assert again.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_running_row_blocks_new_run(self, session_maker, introspector, test_settings, service, match_fields):
        """测试数据库中存在 Running 运行时拒绝新运行（例如另一个进程）。"""
        config = _config(match_fields, dry_run=True)
        await service.start(config)

        # 模拟另一个进程：锁注册表为空，但数据库中有 Running 行
        RunLockRegistry.get_instance().clear_all()
        other = DuplicateRunService(session_maker, introspector, settings=test_settings)

        with pytest.raises(RunInProgressError):
            await other.start(config)

    @pytest.mark.asyncio
    async def test_different_object_types_run_independently(self, service, match_fields):
        account_run = await service.start(_config(match_fields, dry_run=True))
        lead_run = await service.start(_config(match_fields, dry_run=True, object_type="Lead"))

        assert RunLockRegistry.get_instance().holder_of("Account") == account_run.batch_job_id
        assert RunLockRegistry.get_instance().holder_of("Lead") == lead_run.batch_job_id

        results = [await service.execute(lead_run), await service.execute(account_run)]

        assert [r.status for r in results] == [RunStatus.COMPLETED, RunStatus.COMPLETED]
        assert not RunLockRegistry.get_instance().is_locked("Account")


class TestNamedRun:
    """命名配置运行测试。"""

    @pytest.mark.asyncio
    async def test_run_named(self, service, session_maker, record_store, six_accounts, match_fields):
        await record_store.add_records(six_accounts)
        async with session_maker() as session:
            async with session.begin():
                await RunConfigurationRepository(session).save(
                    "accounts-weekly", _config(match_fields, dry_run=True)
                )

        result = await service.run_named("accounts-weekly", dry_run=False)

        assert result.configuration_name == "accounts-weekly"
        assert result.is_dry_run is False
        assert result.records_merged == 3

    @pytest.mark.asyncio
    async def test_unknown_named_configuration(self, service):
        with pytest.raises(ConfigurationError):
            await service.run_named("missing")
