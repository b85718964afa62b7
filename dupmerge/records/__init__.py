"""业务记录模块。

提供外部数据存储的访问，以及标准化、对象结构内省和访问控制协作者。
"""

from dupmerge.records.access import AccessControl, AllowAllAccessControl, StaticAccessControl
from dupmerge.records.domain.models import ChildRelationship, FieldType, SourceRecord
from dupmerge.records.infrastructure.repository import (
    RecordStoreError,
    SqlRecordStore,
    ValidationFailure,
)
from dupmerge.records.schema import SchemaIntrospector, StaticSchemaIntrospector

__all__ = [
    "AccessControl",
    "AllowAllAccessControl",
    "StaticAccessControl",
    "ChildRelationship",
    "FieldType",
    "SourceRecord",
    "RecordStoreError",
    "SqlRecordStore",
    "ValidationFailure",
    "SchemaIntrospector",
    "StaticSchemaIntrospector",
]
