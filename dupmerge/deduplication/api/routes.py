"""去重 API 路由。

提供去重运行、运行结果查询和命名配置的 HTTP API 端点。
"""

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dupmerge.config import get_settings
from dupmerge.database.async_session import get_async_session_maker
from dupmerge.deduplication.domain.exceptions import (
    AccessDeniedError,
    ConfigurationError,
    DedupError,
    NotFoundError,
    RunInProgressError,
    RunStateError,
)
from dupmerge.deduplication.domain.models import (
    DEFAULT_MASTER_STRATEGY,
    DuplicateStatistics,
    GroupDetail,
    MergeConflictView,
    RunConfiguration,
    RunResult,
)
from dupmerge.deduplication.infrastructure.repository import RunConfigurationRepository
from dupmerge.deduplication.services.deduplication_service import DuplicateRunService
from dupmerge.deduplication.services.query_service import RunQueryService
from dupmerge.deduplication.services.review_service import GroupReviewService
from dupmerge.records.access import AccessControl, AllowAllAccessControl
from dupmerge.records.schema import SchemaIntrospector, StaticSchemaIntrospector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/duplicates", tags=["duplicates"])


# ========== 依赖 ==========


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """获取异步会话工厂。"""
    return get_async_session_maker()


def get_introspector() -> SchemaIntrospector:
    """根据配置构建对象结构内省器。"""
    return StaticSchemaIntrospector.from_settings(get_settings())


def get_access_control() -> AccessControl:
    """获取访问控制实现。"""
    return AllowAllAccessControl()


def get_run_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    introspector: SchemaIntrospector = Depends(get_introspector),
    access_control: AccessControl = Depends(get_access_control),
) -> DuplicateRunService:
    return DuplicateRunService(
        session_maker=session_maker,
        introspector=introspector,
        access_control=access_control,
    )


def get_query_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    access_control: AccessControl = Depends(get_access_control),
) -> RunQueryService:
    return RunQueryService(session_maker=session_maker, access_control=access_control)


def get_review_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    introspector: SchemaIntrospector = Depends(get_introspector),
    access_control: AccessControl = Depends(get_access_control),
) -> GroupReviewService:
    return GroupReviewService(
        session_maker=session_maker,
        introspector=introspector,
        access_control=access_control,
    )


def _to_http_exception(error: DedupError) -> HTTPException:
    """把领域异常映射为 HTTP 异常。"""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, AccessDeniedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, ConfigurationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, (RunInProgressError, RunStateError)):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(error))


# ========== 请求/响应模型 ==========


class RunRequest(BaseModel):
    """启动去重运行的请求模型。"""

    object_type: str = Field(..., min_length=1, description="对象类型")
    match_fields: list[str] = Field(..., description="匹配字段（有序）")
    master_strategy: str = Field(
        default=DEFAULT_MASTER_STRATEGY, description="主记录选择策略"
    )
    partition_size: int | None = Field(None, description="分区大小（默认使用全局配置）")
    dry_run: bool = Field(default=True, description="是否为演练模式")

    @field_validator("match_fields")
    @classmethod
    def validate_match_fields(cls, v: list[str]) -> list[str]:
        """去除字段名两端空白。"""
        return [field.strip() for field in v]

    def to_config(self, configuration_name: str | None = None) -> RunConfiguration:
        # 0 和负数原样交给服务校验
        partition_size = self.partition_size
        if partition_size is None:
            partition_size = get_settings().default_partition_size
        return RunConfiguration(
            object_type=self.object_type,
            match_fields=tuple(self.match_fields),
            master_strategy=self.master_strategy,
            partition_size=partition_size,
            dry_run=self.dry_run,
            configuration_name=configuration_name,
        )


class RunAcceptedResponse(BaseModel):
    """运行已受理响应模型。"""

    batch_job_id: str = Field(..., description="批处理作业 ID")
    status: str = Field(..., description="运行状态")


class GroupPageResponse(BaseModel):
    """组明细分页响应模型。"""

    batch_job_id: str = Field(..., description="批处理作业 ID")
    total: int = Field(..., ge=0, description="组明细总数")
    page_size: int = Field(..., description="页大小")
    page_number: int = Field(..., description="页码")
    groups: list[dict[str, Any]] = Field(default_factory=list, description="组明细")


class GroupMergeRequest(BaseModel):
    """人工合并重复组的请求模型。"""

    master_record_id: str | None = Field(
        None, min_length=1, description="指定主记录（默认沿用组明细中的主记录）"
    )


class ErrorResponse(BaseModel):
    """错误响应模型。"""

    detail: str = Field(..., description="错误详情")


# ========== 后台任务函数 ==========


async def _execute_run_task(
    service: DuplicateRunService,
    run: RunResult,
    config: RunConfiguration,
) -> None:
    """在后台执行已创建的运行。

    execute() 自己负责把失败写入运行结果，这里只记录意外异常。
    """
    try:
        await service.execute(run, config)
    except Exception as e:
        logger.exception(f"后台去重运行执行失败: {run.batch_job_id} - {e}")


async def _accept_run(
    service: DuplicateRunService,
    config: RunConfiguration,
    background_tasks: BackgroundTasks,
) -> RunAcceptedResponse:
    try:
        run = await service.start(config)
    except DedupError as e:
        raise _to_http_exception(e) from e

    background_tasks.add_task(_execute_run_task, service, run, config)
    logger.info(f"创建去重运行: {run.batch_job_id} ({config.object_type})")
    return RunAcceptedResponse(batch_job_id=run.batch_job_id, status=run.status.value)


# ========== API 端点 ==========


@router.post(
    "/runs",
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "无效配置"},
        403: {"model": ErrorResponse, "description": "没有权限"},
        409: {"model": ErrorResponse, "description": "已有运行在执行"},
    },
)
async def start_run(
    request: RunRequest,
    background_tasks: BackgroundTasks,
    service: DuplicateRunService = Depends(get_run_service),
) -> RunAcceptedResponse:
    """启动去重运行。

    配置和权限在受理前校验，扫描和合并在后台执行。
    返回的批处理作业 ID 用于查询进度和结果。
    """
    return await _accept_run(service, request.to_config(), background_tasks)


@router.post(
    "/runs/by-config/{configuration_name}",
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse, "description": "配置不存在或无效"},
        403: {"model": ErrorResponse, "description": "没有权限"},
        409: {"model": ErrorResponse, "description": "已有运行在执行"},
    },
)
async def start_named_run(
    configuration_name: str,
    background_tasks: BackgroundTasks,
    dry_run: bool | None = Query(None, description="覆盖配置中的演练模式"),
    service: DuplicateRunService = Depends(get_run_service),
) -> RunAcceptedResponse:
    """按命名配置启动去重运行。"""
    try:
        config = await service.resolve_configuration(configuration_name, dry_run)
    except DedupError as e:
        raise _to_http_exception(e) from e
    return await _accept_run(service, config, background_tasks)


@router.get("/runs")
async def list_runs(
    limit: int = Query(20, ge=1, le=200, description="返回数量"),
    object_type: str | None = Query(None, description="按对象类型过滤"),
    service: RunQueryService = Depends(get_query_service),
) -> list[RunResult]:
    """查询最近的运行。"""
    try:
        return await service.list_recent_runs(limit=limit, object_type=object_type)
    except DedupError as e:
        raise _to_http_exception(e) from e


@router.get(
    "/runs/{batch_job_id}",
    responses={
        403: {"model": ErrorResponse, "description": "没有权限"},
        404: {"model": ErrorResponse, "description": "运行不存在"},
    },
)
async def get_run(
    batch_job_id: str,
    service: RunQueryService = Depends(get_query_service),
) -> RunResult:
    """按批处理作业 ID 查询运行结果。"""
    try:
        return await service.get_run_result_by_job(batch_job_id)
    except DedupError as e:
        raise _to_http_exception(e) from e


@router.get("/runs/{batch_job_id}/progress")
async def get_run_progress(
    batch_job_id: str,
    service: RunQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """查询运行进度。"""
    try:
        return await service.get_progress(batch_job_id)
    except DedupError as e:
        raise _to_http_exception(e) from e


@router.get(
    "/runs/{batch_job_id}/groups",
    responses={
        400: {"model": ErrorResponse, "description": "无效分页参数"},
        403: {"model": ErrorResponse, "description": "没有权限"},
        404: {"model": ErrorResponse, "description": "运行不存在"},
    },
)
async def get_run_groups(
    batch_job_id: str,
    page_size: int = Query(50, description="页大小"),
    page_number: int = Query(1, description="页码（从 1 开始）"),
    service: RunQueryService = Depends(get_query_service),
) -> GroupPageResponse:
    """分页查询运行的组明细。"""
    try:
        run = await service.get_run_result_by_job(batch_job_id)
        groups = await service.get_groups(run.id, page_size, page_number)
        total = await service.get_group_count(run.id)
    except DedupError as e:
        raise _to_http_exception(e) from e

    return GroupPageResponse(
        batch_job_id=batch_job_id,
        total=total,
        page_size=page_size,
        page_number=page_number,
        groups=[service.to_map(detail) for detail in groups],
    )


@router.get(
    "/groups/{group_detail_id}/conflicts",
    responses={
        403: {"model": ErrorResponse, "description": "没有权限"},
        404: {"model": ErrorResponse, "description": "组明细或主记录不存在"},
    },
)
async def get_group_conflicts(
    group_detail_id: int,
    service: GroupReviewService = Depends(get_review_service),
) -> MergeConflictView:
    """查看重复组合并前主记录与各重复记录的字段差异。"""
    try:
        return await service.get_conflicts(group_detail_id)
    except DedupError as e:
        raise _to_http_exception(e) from e


@router.post(
    "/groups/{group_detail_id}/merge",
    responses={
        400: {"model": ErrorResponse, "description": "主记录不在组内或没有可合并的记录"},
        403: {"model": ErrorResponse, "description": "没有权限"},
        404: {"model": ErrorResponse, "description": "组明细或主记录不存在"},
        409: {"model": ErrorResponse, "description": "组已合并或已有运行在执行"},
    },
)
async def merge_group(
    group_detail_id: int,
    request: GroupMergeRequest | None = None,
    service: GroupReviewService = Depends(get_review_service),
) -> GroupDetail:
    """人工合并一个演练或合并失败的重复组。

    合并同步执行，返回更新后的组明细。合并本身失败时返回 200，
    组明细状态为 Failed 并带有失败原因。
    """
    master_record_id = request.master_record_id if request else None
    try:
        return await service.merge_group(group_detail_id, master_record_id)
    except DedupError as e:
        raise _to_http_exception(e) from e


@router.get("/statistics")
async def get_statistics(
    service: RunQueryService = Depends(get_query_service),
) -> DuplicateStatistics:
    """查询所有运行的汇总统计。"""
    try:
        return await service.get_statistics()
    except DedupError as e:
        raise _to_http_exception(e) from e


@router.get("/configurations")
async def list_configurations(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> list[str]:
    """列出所有命名配置。"""
    async with session_maker() as session:
        return await RunConfigurationRepository(session).list_names()


@router.put(
    "/configurations/{name}",
    responses={400: {"model": ErrorResponse, "description": "无效配置"}},
)
async def save_configuration(
    name: str,
    request: RunRequest,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    service: DuplicateRunService = Depends(get_run_service),
) -> RunConfiguration:
    """保存命名配置，保存前按运行规则校验。"""
    config = request.to_config(configuration_name=name)
    try:
        service.validate_configuration(config)
    except DedupError as e:
        raise _to_http_exception(e) from e

    async with session_maker() as session:
        async with session.begin():
            saved = await RunConfigurationRepository(session).save(name, config)

    logger.info(f"保存命名配置: {name}")
    return saved


@router.get(
    "/configurations/{name}",
    responses={404: {"model": ErrorResponse, "description": "配置不存在"}},
)
async def get_configuration(
    name: str,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> RunConfiguration:
    """查询命名配置。"""
    try:
        async with session_maker() as session:
            return await RunConfigurationRepository(session).get(name)
    except DedupError as e:
        raise _to_http_exception(e) from e
