"""记录指纹计算。

根据匹配字段的标准化值生成确定性的分组键。
"""

from collections.abc import Sequence

from dupmerge.records.domain.models import SourceRecord
from dupmerge.records.normalizer import normalize_for
from dupmerge.records.schema import SchemaIntrospector

# 单元分隔符。所有标准化规则都会把它当作空白去除，因此不会出现在分量中
FINGERPRINT_SEPARATOR = "\x1f"


class FingerprintEngine:
    """指纹计算器。

    按匹配字段的声明顺序，对每个字段使用与其类型匹配的标准化规则：
    - 电话字段：只保留数字
    - 邮箱字段：小写并去除空白
    - 其他文本：小写、去除标点、合并空白

    空白字段作为空字符串分量参与拼接；所有分量都为空时返回空字符串，
    此类记录不参与分组。
    """

    def __init__(self, introspector: SchemaIntrospector) -> None:
        self._introspector = introspector

    def components_of(
        self, record: SourceRecord, match_fields: Sequence[str]
    ) -> list[str]:
        """计算每个匹配字段的标准化分量。"""
        return [
            normalize_for(
                self._introspector.field_type_of(record.object_type, field),
                record.value_of(field),
            )
            for field in match_fields
        ]

    def fingerprint_of(
        self, record: SourceRecord, match_fields: Sequence[str]
    ) -> str:
        """计算记录指纹。

        Args:
            record: 源记录
            match_fields: 匹配字段（有序）

        Returns:
            指纹字符串，所有分量为空时返回 ""
        """
        components = self.components_of(record, match_fields)
        if not any(components):
            return ""
        return FINGERPRINT_SEPARATOR.join(components)
