"""配置管理模块。

使用 Pydantic 加载和验证环境变量。
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 加载 .env 文件
load_dotenv()


class Settings(BaseSettings):
    """应用配置。

    从环境变量加载配置，使用 Pydantic 进行验证。
    """

    # 数据库配置
    database_url: str = Field(
        default="sqlite:///./dupmerge.db",
        description="数据库连接地址"
    )

    # 日志配置
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="日志级别",
        validate_default=True,  # 确保默认值也经过验证
    )

    # 监控配置
    prometheus_enabled: bool = Field(
        default=True, description="是否启用 Prometheus 监控"
    )

    # 扫描与合并配置
    default_partition_size: int = Field(
        default=200, ge=1, le=2000,
        description="默认分区大小（每个分区的记录数）"
    )
    max_concurrent_merges: int = Field(
        default=1, ge=1, le=50,
        description="合并阶段的最大并发组数"
    )
    merge_max_attempts: int = Field(
        default=1, ge=1, le=5,
        description="单个重复组合并工作单元的最大尝试次数"
    )
    accumulator_page_size: int = Field(
        default=500, ge=1, le=10000,
        description="汇总阶段每页读取的指纹数"
    )
    purge_accumulator_on_finish: bool = Field(
        default=True,
        description="运行结束后是否清理指纹累加表"
    )

    # 查询配置
    group_page_size_max: int = Field(
        default=200, ge=1, le=2000,
        description="重复组分页查询的最大页大小"
    )

    # 对象结构配置（JSON）
    object_types: list[str] = Field(
        default_factory=list,
        description="允许去重的对象类型（子关系和字段类型映射中的对象类型会自动加入）",
    )
    schema_relationships: dict[str, list[dict[str, str]]] = Field(
        default_factory=dict,
        description="对象类型到子关系列表的映射，"
        "例如 {\"Account\": [{\"relationship_field\": \"AccountId\", \"child_object_type\": \"Contact\"}]}",
    )
    field_types: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="对象类型到字段类型的映射（phone / email / text）",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证并标准化日志级别。"""
        if isinstance(v, str):
            return v.upper()
        return v


# 全局缓存，用于测试时清除
_settings_cache: Settings | None = None


def get_settings() -> Settings:
    """获取配置单例。

    使用全局缓存确保配置只加载一次。

    Returns:
        Settings: 配置实例
    """
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def clear_settings_cache() -> None:
    """清除配置缓存。

    主要用于测试场景。
    """
    global _settings_cache
    _settings_cache = None
