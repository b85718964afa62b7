"""数据库引擎与会话。"""
