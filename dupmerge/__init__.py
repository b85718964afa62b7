"""dupmerge - 重复记录检测与合并服务。"""

__version__ = "0.1.0"
