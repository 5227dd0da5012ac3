"""
脚本2：把本地未同步 / 推送失败的订单推送到远端平台。

运行：python run_push_orders.py [--export-new]
依赖：.env 中配置 DATABASE_URL、REMOTE_API_BASE_URL 及认证
"""
import argparse
import asyncio
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

load_dotenv(Path(__file__).resolve().parent / ".env")


async def run_push(export_new: bool = False):
    from ordersync.core.config import get_settings
    from ordersync.models import PostgresOrderStore, create_pool
    from ordersync.services.gateway import RemoteOrderGateway
    from ordersync.services.pusher import OutboundPusher

    settings = get_settings()
    pool = await create_pool()
    try:
        pusher = OutboundPusher(
            RemoteOrderGateway(settings),
            PostgresOrderStore(pool),
            settings,
            export_new_orders=export_new or None,
        )
        result = await pusher.push_pending()
        for err in result.errors:
            logger.warning(f"  id={err.order_id} external_id={err.external_id} [{err.kind}] {err.message}")
    finally:
        await pool.close()


def parse_args():
    p = argparse.ArgumentParser(description="推送本地订单修改到远端平台")
    p.add_argument(
        "--export-new",
        action="store_true",
        help="对没有 external_id 的本地订单直接在远端创建（默认按 EXPORT_NEW_ORDERS）",
    )
    return p.parse_args()


if __name__ == "__main__":
    args = parse_args()
    asyncio.run(run_push(export_new=args.export_new))
