"""
脚本1：轮询同步远端订单到本地 orders 表（拉取 + 对账）。
时间范围：默认最近 7 天（SYNC_LOOKBACK_DAYS），可通过 -n 指定天数。

运行：python run_sync_orders.py [-n 天数] [--once] [--interval 秒] [--check]
依赖：.env 中配置 DATABASE_URL、REMOTE_API_BASE_URL 及认证；数据库已执行 ordersync/schemas/tables.sql
"""
import argparse
import asyncio
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

load_dotenv(Path(__file__).resolve().parent / ".env")


async def build_orchestrator(days_back: int | None = None):
    from ordersync.core.config import get_settings
    from ordersync.models import PostgresOrderStore, create_pool
    from ordersync.services.gateway import RemoteOrderGateway
    from ordersync.services.orchestrator import SyncOrchestrator

    settings = get_settings()
    if days_back is not None:
        settings = settings.model_copy(update={"SYNC_LOOKBACK_DAYS": days_back})
    pool = await create_pool(max_size=settings.SYNC_WORKERS + 2)
    orchestrator = SyncOrchestrator(RemoteOrderGateway(settings), PostgresOrderStore(pool), settings)
    return orchestrator, pool


async def check_connection() -> None:
    from ordersync.models import get_connection
    from ordersync.services.gateway import RemoteOrderGateway

    await RemoteOrderGateway().ping()
    conn = await get_connection()
    try:
        await conn.fetchval("SELECT 1")
        logger.info("✅ 数据库连接正常")
    finally:
        await conn.close()


async def main(days_back: int | None, once: bool, interval: float | None):
    orchestrator, pool = await build_orchestrator(days_back)
    try:
        if once:
            result = await orchestrator.run_sync_now()
            logger.info(f"[同步] {result.summary}")
            for err in result.errors:
                logger.warning(f"  external_id={err.external_id} [{err.stage}/{err.kind}] {err.message}")
            return
        interval = interval or orchestrator.settings.SYNC_INTERVAL_SECONDS
        logger.info(
            "启动远端订单轮询同步，每 {} 秒执行一次，同步前 {} 天数据",
            interval,
            orchestrator.settings.SYNC_LOOKBACK_DAYS,
        )
        # 先跑一轮，之后交给定时器
        await orchestrator.run_sync_now()
        orchestrator.enable_auto_sync(interval)
        await asyncio.Event().wait()
    finally:
        await orchestrator.shutdown()
        await pool.close()


def parse_args():
    p = argparse.ArgumentParser(description="轮询同步远端订单到本地 orders 表")
    p.add_argument(
        "-n",
        type=int,
        default=None,
        metavar="DAYS",
        help="同步前多少天的数据，默认取 SYNC_LOOKBACK_DAYS",
    )
    p.add_argument("--once", action="store_true", help="只执行一轮后退出")
    p.add_argument("--interval", type=float, default=None, help="轮询间隔秒数，默认取 SYNC_INTERVAL_SECONDS")
    p.add_argument("--check", action="store_true", help="只检查远端 API 与数据库连通性")
    return p.parse_args()


if __name__ == "__main__":
    args = parse_args()
    if args.check:
        asyncio.run(check_connection())
    else:
        asyncio.run(main(days_back=args.n, once=args.once, interval=args.interval))
