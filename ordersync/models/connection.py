"""
数据库连接（asyncpg），供同步引擎、出站推送及脚本使用。
"""
from typing import Any

import asyncpg

from ordersync.core.config import get_settings


def _dsn() -> str:
    settings = get_settings()
    url = settings.DATABASE_URL
    if not url:
        raise RuntimeError("未设置 DATABASE_URL")
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)


async def get_connection() -> Any:
    """
    获取单个 asyncpg 连接。
    使用前需确保 DATABASE_URL 已配置（.env 或环境变量）。
    """
    return await asyncpg.connect(_dsn())


async def create_pool(min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """创建连接池；同步引擎的并发 worker 各自从池中取连接。"""
    return await asyncpg.create_pool(_dsn(), min_size=min_size, max_size=max_size)
