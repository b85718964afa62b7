"""重复组解析测试。"""

import pytest

from dupmerge.deduplication.domain.strategies import NewestCreatedStrategy, OldestCreatedStrategy
from dupmerge.deduplication.services.group_resolver import GroupResolver


class FixedScorer:
    def score(self, fingerprint, records):
        return 0.75


class TestGroupResolver:
    """GroupResolver 测试。"""

    @pytest.mark.asyncio
    async def test_resolve_selects_master(self, record_store, six_accounts, match_fields):
        """测试解析出主记录和字段值快照。"""
        await record_store.add_records(six_accounts)
        resolver = GroupResolver(record_store, OldestCreatedStrategy())

        group = await resolver.resolve("fp", {"001", "002"}, "Account", match_fields)

        assert group.master_id == "001"
        assert group.duplicate_ids == ["002"]
        assert group.match_score == 1.0
        assert group.field_values == {
            "Name": "Acme Corp",
            "Phone": "(555) 010-0100",
            "City": "Paris",
        }

    @pytest.mark.asyncio
    async def test_strategy_and_scorer_are_pluggable(self, record_store, six_accounts, match_fields):
        await record_store.add_records(six_accounts)
        resolver = GroupResolver(record_store, NewestCreatedStrategy(), FixedScorer())

        group = await resolver.resolve("fp", {"003", "004"}, "Account", match_fields)

        assert group.master_id == "004"
        assert group.match_score == 0.75

    @pytest.mark.asyncio
    async def test_missing_members_are_dropped(self, record_store, six_accounts, match_fields):
        """测试扫描后被删除的成员被忽略。"""
        await record_store.add_records(six_accounts)
        resolver = GroupResolver(record_store, OldestCreatedStrategy())

        group = await resolver.resolve("fp", {"001", "002", "gone"}, "Account", match_fields)

        assert group.member_ids == frozenset({"001", "002"})

    @pytest.mark.asyncio
    async def test_returns_none_when_fewer_than_two_remain(self, record_store, six_accounts, match_fields):
        await record_store.add_records(six_accounts)
        resolver = GroupResolver(record_store, OldestCreatedStrategy())

        assert await resolver.resolve("fp", {"001", "gone"}, "Account", match_fields) is None
