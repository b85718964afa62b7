"""字段值标准化测试。"""

import pytest

from dupmerge.records import normalizer
from dupmerge.records.domain.models import FieldType
from dupmerge.records.normalizer import (
    normalize,
    normalize_email,
    normalize_for,
    normalize_phone,
)


class TestNormalize:
    """普通文本标准化测试。"""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("Acme Corp", "acme corp"),
            ("ACME, Corp.", "acme corp"),
            ("  Acme\t\nCorp  ", "acme corp"),
            ("snake_case-name", "snakecasename"),
            ("Café Müller", "café müller"),
        ],
    )
    def test_normalize_text(self, value, expected):
        """测试大小写、标点和空白处理。"""
        assert normalize(value) == expected

    @pytest.mark.parametrize("value", [None, "", "   ", "\t\n"])
    def test_blank_returns_empty(self, value):
        """测试 None 和空白返回空字符串。"""
        assert normalize(value) == ""

    def test_non_string_value(self):
        """测试非字符串值先转为字符串。"""
        assert normalize(12345) == "12345"

    @pytest.mark.parametrize("value", ["Acme, Corp.", "  MIXED case  ", "a_b-c"])
    def test_idempotent(self, value):
        """测试标准化是幂等的。"""
        once = normalize(value)
        assert normalize(once) == once

    def test_separator_is_removed(self):
        """测试单元分隔符被当作空白去除。"""
        assert normalize("acme\x1fcorp") == "acme corp"


class TestNormalizePhone:
    """电话号码标准化测试。"""

    def test_keeps_digits_only(self):
        """测试只保留数字。"""
        assert normalize_phone("(555) 123-4567") == "5551234567"

    def test_formats_are_equal(self):
        """测试不同格式的同一号码标准化后相同。"""
        assert normalize_phone("+1 555.123.4567") == normalize_phone("1-555-123-4567")

    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_blank_returns_empty(self, value):
        assert normalize_phone(value) == ""

    def test_idempotent(self):
        once = normalize_phone("(555) 123-4567")
        assert normalize_phone(once) == once


class TestNormalizeEmail:
    """邮箱标准化测试。"""

    def test_lowercase_and_trim(self):
        """测试小写和去除空白。"""
        assert normalize_email(" Test.Email@Example.com ") == "test.email@example.com"

    def test_inner_whitespace_removed(self):
        assert normalize_email("john .doe@ example.com") == "john.doe@example.com"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_blank_returns_empty(self, value):
        assert normalize_email(value) == ""


class TestNormalizerCache:
    """标准化缓存测试。"""

    def test_results_are_cached(self):
        """测试结果按原始输入缓存。"""
        normalizer.clear_cache()
        assert normalizer.cache_size() == 0

        normalize("Acme")
        normalize("Acme")
        normalize_phone("555-0100")

        assert normalizer.cache_size() == 2

    def test_clear_cache(self):
        normalize("Acme")
        normalizer.clear_cache()
        assert normalizer.cache_size() == 0

    def test_blank_values_not_cached(self):
        normalizer.clear_cache()
        normalize(None)
        normalize("  ")
        assert normalizer.cache_size() == 0


class TestNormalizeFor:
    """按字段类型选择规则的测试。"""

    def test_dispatch_by_field_type(self):
        assert normalize_for(FieldType.phone, "(555) 010") == "555010"
        assert normalize_for(FieldType.email, " A@B.COM ") == "a@b.com"
        assert normalize_for(FieldType.text, "Hello, World") == "hello world"
