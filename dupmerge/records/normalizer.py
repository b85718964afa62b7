"""字段值标准化工具。

提供比较用的文本、电话和邮箱标准化规则。
结果按原始输入缓存在进程内，可通过 clear_cache() 清除。
"""

import logging
import re
import threading
from collections.abc import Callable
from typing import Any

from dupmerge.records.domain.models import FieldType

logger = logging.getLogger(__name__)

# 标点符号（包括下划线）
_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_NON_DIGIT_RE = re.compile(r"\D")

# 单个规则缓存的最大条目数，超过后整体清空
_CACHE_MAX_ENTRIES = 100_000

_caches: dict[str, dict[str, str]] = {
    FieldType.text.value: {},
    FieldType.phone.value: {},
    FieldType.email.value: {},
}
_cache_lock = threading.Lock()


def _as_text(value: Any) -> str:
    """将任意字段值转换为字符串，None 转为空字符串。"""
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _cached(rule: str, raw: str, compute: Callable[[str], str]) -> str:
    cache = _caches[rule]
    hit = cache.get(raw)
    if hit is not None:
        return hit

    result = compute(raw)
    with _cache_lock:
        if len(cache) >= _CACHE_MAX_ENTRIES:
            logger.debug(f"标准化缓存已满，清空规则缓存: {rule}")
            cache.clear()
        cache[raw] = result
    return result


def _normalize_text(raw: str) -> str:
    lowered = raw.lower()
    stripped = _PUNCTUATION_RE.sub("", lowered)
    return " ".join(stripped.split())


def _normalize_phone(raw: str) -> str:
    return _NON_DIGIT_RE.sub("", raw)


def _normalize_email(raw: str) -> str:
    return "".join(raw.split()).lower()


def normalize(value: Any) -> str:
    """标准化普通文本。

    转小写、去除标点、合并空白并去除首尾空白。
    None 或空白返回空字符串。

    Args:
        value: 原始字段值

    Returns:
        标准化后的文本
    """
    raw = _as_text(value)
    if not raw.strip():
        return ""
    return _cached(FieldType.text.value, raw, _normalize_text)


def normalize_phone(value: Any) -> str:
    """标准化电话号码，只保留数字。

    Example:
        >>> normalize_phone("(555) 123-4567")
        '5551234567'
    """
    raw = _as_text(value)
    if not raw.strip():
        return ""
    return _cached(FieldType.phone.value, raw, _normalize_phone)


def normalize_email(value: Any) -> str:
    """标准化邮箱地址。

    转小写并去除所有空白。

    Example:
        >>> normalize_email(" Test.Email@Example.com ")
        'test.email@example.com'
    """
    raw = _as_text(value)
    if not raw.strip():
        return ""
    return _cached(FieldType.email.value, raw, _normalize_email)


_RULES: dict[FieldType, Callable[[Any], str]] = {
    FieldType.text: normalize,
    FieldType.phone: normalize_phone,
    FieldType.email: normalize_email,
}


def normalize_for(field_type: FieldType, value: Any) -> str:
    """按字段类型选择标准化规则。"""
    return _RULES[field_type](value)


def clear_cache() -> None:
    """清除所有标准化缓存。"""
    with _cache_lock:
        for cache in _caches.values():
            cache.clear()


def cache_size() -> int:
    """返回当前缓存条目总数。"""
    return sum(len(cache) for cache in _caches.values())
