"""业务记录领域模型。

定义源记录、子关系和字段类型的 Pydantic 数据模型。
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FieldType(str, Enum):
    """字段类型枚举。

    决定指纹计算时使用的标准化规则。
    """

    text = "text"
    phone = "phone"
    email = "email"


class SourceRecord(BaseModel):
    """源记录模型。

    表示外部数据存储中的一条业务记录。引擎只读取记录，
    合并时通过记录存储触发子关系更新和删除。
    """

    # 组明细用逗号拼接重复记录 ID，ID 内不能含逗号
    id: str = Field(..., min_length=1, pattern=r"^[^,]+$", description="记录唯一 ID")
    object_type: str = Field(..., description="对象类型，例如 Account")
    created_at: datetime = Field(..., description="记录创建时间")
    last_modified_at: datetime | None = Field(None, description="记录最后修改时间")
    fields: dict[str, Any] = Field(default_factory=dict, description="字段值")

    model_config = ConfigDict(frozen=True)

    def value_of(self, field: str) -> Any:
        """获取字段值，不存在时返回 None。"""
        return self.fields.get(field)


class ChildRelationship(BaseModel):
    """子关系模型。

    表示某个子对象类型通过 relationship_field 引用父对象。
    """

    relationship_field: str = Field(..., description="子记录上引用父记录的字段")
    child_object_type: str = Field(..., description="子对象类型")

    model_config = ConfigDict(frozen=True)
