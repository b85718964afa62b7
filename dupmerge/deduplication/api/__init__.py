"""去重 API 层。"""
