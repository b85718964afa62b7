"""去重 API 路由测试。

测试运行受理、结果查询、组明细分页和命名配置端点。
"""

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient

from dupmerge.deduplication.api.routes import (
    get_access_control,
    get_introspector,
    get_session_maker,
)
from dupmerge.main import app
from dupmerge.records.access import OPERATION_MERGE, StaticAccessControl


@pytest.fixture
def access_control() -> StaticAccessControl:
    return StaticAccessControl()


@pytest.fixture
async def async_client(session_maker, introspector, access_control):
    """覆盖依赖后的测试客户端。

    后台任务在请求返回前执行完毕，因此受理后即可查询终态结果。
    """
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_introspector] = lambda: introspector
    app.dependency_overrides[get_access_control] = lambda: access_control

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def run_payload(match_fields) -> dict:
    return {
        "object_type": "Account",
        "match_fields": list(match_fields),
        "master_strategy": "OldestCreated",
        "partition_size": 2,
        "dry_run": False,
    }


@pytest.mark.asyncio
class TestRunEndpoints:
    """测试运行受理和查询端点。"""

    async def test_start_run_and_fetch_result(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        """测试受理运行后可以查询到完成的结果。"""
        await record_store.add_records(six_accounts)

        response = await async_client.post("/api/duplicates/runs", json=run_payload)

        assert response.status_code == status.HTTP_202_ACCEPTED
        accepted = response.json()
        assert accepted["status"] == "Running"
        job_id = accepted["batch_job_id"]

        response = await async_client.get(f"/api/duplicates/runs/{job_id}")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "Completed"
        assert data["records_processed"] == 6
        assert data["duplicates_found"] == 3
        assert data["records_merged"] == 3
        assert await record_store.count("Account") == 3

    async def test_dry_run_is_default(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        """测试未指定 dry_run 时按演练模式运行。"""
        await record_store.add_records(six_accounts)
        del run_payload["dry_run"]

        response = await async_client.post("/api/duplicates/runs", json=run_payload)
        job_id = response.json()["batch_job_id"]

        data = (await async_client.get(f"/api/duplicates/runs/{job_id}")).json()
        assert data["is_dry_run"] is True
        assert data["records_merged"] == 0
        assert await record_store.count("Account") == 6

    async def test_invalid_configuration_returns_400(
        self, async_client: AsyncClient, run_payload
    ) -> None:
        run_payload["match_fields"] = []

        response = await async_client.post("/api/duplicates/runs", json=run_payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.parametrize("partition_size", [0, -1])
    async def test_non_positive_partition_size_returns_400(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload, partition_size
    ) -> None:
        """测试显式传入非正分区大小时被拒绝，不回退到默认值。"""
        await record_store.add_records(six_accounts)
        run_payload["partition_size"] = partition_size

        response = await async_client.post("/api/duplicates/runs", json=run_payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert (await async_client.get("/api/duplicates/runs")).json() == []
        assert await record_store.count("Account") == 6

    async def test_unknown_object_type_returns_400(
        self, async_client: AsyncClient, run_payload
    ) -> None:
        run_payload["object_type"] = "Unknown"

        response = await async_client.post("/api/duplicates/runs", json=run_payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Unknown" in response.json()["detail"]

    async def test_merge_denied_returns_403(
        self, async_client: AsyncClient, access_control, run_payload
    ) -> None:
        access_control.deny("Account", OPERATION_MERGE)

        response = await async_client.post("/api/duplicates/runs", json=run_payload)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        runs = (await async_client.get("/api/duplicates/runs")).json()
        assert runs == []

    async def test_unknown_job_returns_404(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/duplicates/runs/missing")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_progress(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        job_id = (
            await async_client.post("/api/duplicates/runs", json=run_payload)
        ).json()["batch_job_id"]

        response = await async_client.get(f"/api/duplicates/runs/{job_id}/progress")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["batch_job_id"] == job_id
        assert data["percentage"] == 100.0

    async def test_list_runs_and_statistics(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        await async_client.post("/api/duplicates/runs", json={**run_payload, "dry_run": True})

        runs = (await async_client.get("/api/duplicates/runs?object_type=Account")).json()
        assert len(runs) == 1

        stats = (await async_client.get("/api/duplicates/statistics")).json()
        assert stats["total_runs"] == 1
        assert stats["total_duplicates"] == 3
        assert stats["by_object"]["Account"]["total_processed"] == 6


@pytest.mark.asyncio
class TestGroupEndpoint:
    """测试组明细分页端点。"""

    async def test_group_page(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        job_id = (
            await async_client.post("/api/duplicates/runs", json=run_payload)
        ).json()["batch_job_id"]

        response = await async_client.get(
            f"/api/duplicates/runs/{job_id}/groups", params={"page_size": 2, "page_number": 1}
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 3
        assert len(data["groups"]) == 2
        assert all(len(g["duplicate_record_ids"]) == 1 for g in data["groups"])
        assert all(g["merge_status"] == "Merged" for g in data["groups"])

        last = (
            await async_client.get(
                f"/api/duplicates/runs/{job_id}/groups", params={"page_size": 2, "page_number": 2}
            )
        ).json()
        assert len(last["groups"]) == 1

    async def test_invalid_page_size_returns_400(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        job_id = (
            await async_client.post("/api/duplicates/runs", json=run_payload)
        ).json()["batch_job_id"]

        response = await async_client.get(
            f"/api/duplicates/runs/{job_id}/groups", params={"page_size": 0}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.asyncio
class TestGroupReviewEndpoints:
    """测试重复组字段差异和人工合并端点。"""

    async def _dry_run_groups(self, async_client: AsyncClient, run_payload) -> dict:
        run_payload["dry_run"] = True
        job_id = (
            await async_client.post("/api/duplicates/runs", json=run_payload)
        ).json()["batch_job_id"]
        page = (await async_client.get(f"/api/duplicates/runs/{job_id}/groups")).json()
        return {g["master_record_id"]: g for g in page["groups"]}

    async def test_conflicts(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        groups = await self._dry_run_groups(async_client, run_payload)

        response = await async_client.get(
            f"/api/duplicates/groups/{groups['003']['id']}/conflicts"
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["master_record_id"] == "003"
        assert data["duplicates"][0]["record_id"] == "004"
        assert {c["field"] for c in data["duplicates"][0]["conflicts"]} == {"Name", "Phone", "City"}

    async def test_conflicts_unknown_group_returns_404(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/duplicates/groups/999/conflicts")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_merge_with_chosen_master(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        groups = await self._dry_run_groups(async_client, run_payload)
        url = f"/api/duplicates/groups/{groups['001']['id']}/merge"

        response = await async_client.post(url, json={"master_record_id": "002"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["merge_status"] == "Merged"
        assert data["master_record_id"] == "002"
        assert await record_store.count("Account") == 5

        again = await async_client.post(url)
        assert again.status_code == status.HTTP_409_CONFLICT

    async def test_merge_without_body_keeps_master(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        groups = await self._dry_run_groups(async_client, run_payload)

        response = await async_client.post(
            f"/api/duplicates/groups/{groups['006']['id']}/merge"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["master_record_id"] == "006"

    async def test_merge_master_outside_group_returns_400(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        groups = await self._dry_run_groups(async_client, run_payload)

        response = await async_client.post(
            f"/api/duplicates/groups/{groups['001']['id']}/merge",
            json={"master_record_id": "005"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert await record_store.count("Account") == 6

    async def test_merge_denied_returns_403(
        self, async_client: AsyncClient, access_control, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)
        groups = await self._dry_run_groups(async_client, run_payload)
        access_control.deny("Account", OPERATION_MERGE)

        response = await async_client.post(
            f"/api/duplicates/groups/{groups['001']['id']}/merge"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert await record_store.count("Account") == 6


@pytest.mark.asyncio
class TestConfigurationEndpoints:
    """测试命名配置端点。"""

    async def test_save_and_run_named_configuration(
        self, async_client: AsyncClient, record_store, six_accounts, run_payload
    ) -> None:
        await record_store.add_records(six_accounts)

        response = await async_client.put(
            "/api/duplicates/configurations/accounts", json={**run_payload, "dry_run": True}
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["configuration_name"] == "accounts"

        names = (await async_client.get("/api/duplicates/configurations")).json()
        assert names == ["accounts"]

        response = await async_client.post(
            "/api/duplicates/runs/by-config/accounts", params={"dry_run": "false"}
        )
        assert response.status_code == status.HTTP_202_ACCEPTED
        job_id = response.json()["batch_job_id"]

        data = (await async_client.get(f"/api/duplicates/runs/{job_id}")).json()
        assert data["configuration_name"] == "accounts"
        assert data["is_dry_run"] is False
        assert await record_store.count("Account") == 3

    async def test_invalid_configuration_not_saved(
        self, async_client: AsyncClient, run_payload
    ) -> None:
        response = await async_client.put(
            "/api/duplicates/configurations/broken",
            json={**run_payload, "master_strategy": "Random"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert (await async_client.get("/api/duplicates/configurations")).json() == []

    async def test_unknown_configuration(self, async_client: AsyncClient) -> None:
        response = await async_client.get("/api/duplicates/configurations/missing")
        assert response.status_code == status.HTTP_404_NOT_FOUND

        response = await async_client.post("/api/duplicates/runs/by-config/missing")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
