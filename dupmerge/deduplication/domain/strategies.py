"""主记录选择策略。

每个策略按名称注册，运行开始时根据配置字符串选择。
新增策略只需继承 MasterSelectionStrategy 并使用 register_strategy 注册，
无需修改分组逻辑。
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from dupmerge.deduplication.domain.exceptions import ConfigurationError
from dupmerge.records.domain.models import SourceRecord


def id_sort_key(record_id: str) -> tuple[int, int, str]:
    """记录 ID 的排序键。

    纯数字 ID 按数值比较并排在前面，其余按字典序比较。
    """
    if record_id.isdigit():
        return (0, int(record_id), "")
    return (1, 0, record_id)


class MasterSelectionStrategy(ABC):
    """主记录选择策略基类。"""

    name: str = ""

    @abstractmethod
    def select(self, records: Sequence[SourceRecord]) -> SourceRecord:
        """从组成员中选出主记录。

        Args:
            records: 组成员（至少 2 条）

        Returns:
            主记录
        """


_REGISTRY: dict[str, type[MasterSelectionStrategy]] = {}


def register_strategy(
    name: str,
) -> Callable[[type[MasterSelectionStrategy]], type[MasterSelectionStrategy]]:
    """注册主记录选择策略的类装饰器。"""

    def decorator(cls: type[MasterSelectionStrategy]) -> type[MasterSelectionStrategy]:
        cls.name = name
        _REGISTRY[name] = cls
        return cls

    return decorator


def get_strategy(name: str) -> MasterSelectionStrategy:
    """按名称创建策略实例。

    Raises:
        ConfigurationError: 未注册的策略名称
    """
    strategy_cls = _REGISTRY.get(name)
    if strategy_cls is None:
        raise ConfigurationError(
            f"未知的主记录选择策略: {name}（可用: {', '.join(available_strategies())}）"
        )
    return strategy_cls()


def available_strategies() -> list[str]:
    return sorted(_REGISTRY)


@register_strategy("OldestCreated")
class OldestCreatedStrategy(MasterSelectionStrategy):
    """选择创建时间最早的记录，时间相同时选择 ID 较小者。"""

    def select(self, records: Sequence[SourceRecord]) -> SourceRecord:
        return min(records, key=lambda r: (r.created_at, id_sort_key(r.id)))


@register_strategy("NewestCreated")
class NewestCreatedStrategy(MasterSelectionStrategy):
    """选择创建时间最晚的记录，时间相同时选择 ID 较小者。"""

    def select(self, records: Sequence[SourceRecord]) -> SourceRecord:
        latest = max(r.created_at for r in records)
        return min(
            (r for r in records if r.created_at == latest),
            key=lambda r: id_sort_key(r.id),
        )


@register_strategy("MostComplete")
class MostCompleteStrategy(MasterSelectionStrategy):
    """选择非空字段最多的记录，数量相同时退回 OldestCreated 规则。"""

    @staticmethod
    def _filled(record: SourceRecord) -> int:
        return sum(
            1
            for value in record.fields.values()
            if value is not None and str(value).strip()
        )

    def select(self, records: Sequence[SourceRecord]) -> SourceRecord:
        return min(
            records,
            key=lambda r: (-self._filled(r), r.created_at, id_sort_key(r.id)),
        )
