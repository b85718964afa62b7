"""对象结构内省。

提供对象类型的子关系和字段类型信息，合并时用于子记录重新挂接。
"""

import logging
import re
from typing import Protocol

from dupmerge.records.domain.models import ChildRelationship, FieldType

logger = logging.getLogger(__name__)

_PHONE_NAME_RE = re.compile(r"phone|mobile|fax", re.IGNORECASE)
_EMAIL_NAME_RE = re.compile(r"email", re.IGNORECASE)


class SchemaIntrospector(Protocol):
    """对象结构内省接口。"""

    def object_types(self) -> set[str]:
        """返回已知的对象类型集合。"""
        ...

    def child_relationships_of(self, object_type: str) -> list[ChildRelationship]:
        """返回引用该对象类型的所有子关系。"""
        ...

    def field_type_of(self, object_type: str, field: str) -> FieldType:
        """返回字段类型。"""
        ...


def guess_field_type(field: str) -> FieldType:
    """根据字段名推断字段类型。

    名称包含 phone / mobile / fax 视为电话，包含 email 视为邮箱，
    其余视为普通文本。
    """
    if _PHONE_NAME_RE.search(field):
        return FieldType.phone
    if _EMAIL_NAME_RE.search(field):
        return FieldType.email
    return FieldType.text


class StaticSchemaIntrospector:
    """基于静态映射的对象结构内省实现。

    对象类型集合由 relationships 和 field_types 的键以及
    object_types 参数共同决定。
    """

    def __init__(
        self,
        relationships: dict[str, list[ChildRelationship]] | None = None,
        field_types: dict[str, dict[str, FieldType]] | None = None,
        object_types: set[str] | None = None,
    ) -> None:
        self._relationships = relationships or {}
        self._field_types = field_types or {}
        self._object_types = set(object_types or set())
        self._object_types.update(self._relationships)
        self._object_types.update(self._field_types)

    @classmethod
    def from_settings(cls, settings) -> "StaticSchemaIntrospector":
        """从应用配置构建内省器。

        Args:
            settings: Settings 实例

        Returns:
            StaticSchemaIntrospector: 内省器实例
        """
        relationships = {
            object_type: [ChildRelationship(**item) for item in items]
            for object_type, items in settings.schema_relationships.items()
        }
        field_types = {
            object_type: {field: FieldType(kind) for field, kind in mapping.items()}
            for object_type, mapping in settings.field_types.items()
        }
        logger.debug(
            f"从配置加载对象结构: {len(relationships)} 个对象类型的子关系, "
            f"{len(field_types)} 个对象类型的字段类型"
        )
        return cls(
            relationships=relationships,
            field_types=field_types,
            object_types=set(settings.object_types),
        )

    def object_types(self) -> set[str]:
        return set(self._object_types)

    def child_relationships_of(self, object_type: str) -> list[ChildRelationship]:
        return list(self._relationships.get(object_type, []))

    def field_type_of(self, object_type: str, field: str) -> FieldType:
        explicit = self._field_types.get(object_type, {}).get(field)
        if explicit is not None:
            return explicit
        return guess_field_type(field)
