"""
FastAPI 主应用：对外暴露同步触发接口
"""
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from ordersync.core.config import get_settings
from ordersync.core.errors import AlreadyRunningError, AuthError, StorageUnavailableError
from ordersync.schemas.base import BaseResponse
from ordersync.schemas.sync import PushResult, RunResult, RunState, RunSummary
from ordersync.services.gateway import RemoteOrderGateway
from ordersync.services.orchestrator import SyncOrchestrator
from ordersync.services.pusher import OutboundPusher


settings = get_settings()

# 配置日志
logger.remove()
logger.add(
    sys.stdout,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.LOG_LEVEL
)


class AutoSyncRequest(BaseModel):
    interval_seconds: Optional[float] = Field(default=None, gt=0)


class AutoSyncStatus(BaseModel):
    enabled: bool
    interval_seconds: Optional[float] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：未注入时按配置组装存储、网关、编排器与推送器"""
    logger.info(f"🚀 启动应用: {settings.APP_NAME}")
    logger.info(f"📝 环境: {settings.ENV}")
    logger.info(f"🛒 远端 API: {settings.remote_api_url}")
    pool = None
    if getattr(app.state, "orchestrator", None) is None:
        from ordersync.models import PostgresOrderStore, create_pool

        pool = await create_pool(max_size=settings.SYNC_WORKERS + 2)
        store = PostgresOrderStore(pool)
        gateway = RemoteOrderGateway(settings)
        app.state.orchestrator = SyncOrchestrator(gateway, store, settings)
        app.state.pusher = OutboundPusher(gateway, store, settings)
        if settings.AUTO_SYNC_ENABLED:
            app.state.orchestrator.enable_auto_sync(settings.SYNC_INTERVAL_SECONDS)
    yield
    await app.state.orchestrator.shutdown()
    if pool is not None:
        await pool.close()
    logger.info("👋 关闭应用")


# 创建应用
app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


@app.get("/")
async def root():
    """根路径"""
    return {
        "app": settings.APP_NAME,
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    """健康检查"""
    return {"status": "healthy"}


@app.post("/sync/run", response_model=BaseResponse[RunResult])
async def run_sync_now(request: Request):
    """立即执行一轮同步；已有同步在运行时返回 409"""
    try:
        result = await _orchestrator(request).run_sync_now()
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return BaseResponse(
        success=result.state == RunState.COMPLETED,
        data=result,
        message=result.summary,
    )


@app.post("/sync/cancel", response_model=BaseResponse[bool])
async def cancel_sync(request: Request):
    """请求取消正在运行的同步"""
    accepted = _orchestrator(request).request_cancel()
    return BaseResponse(data=accepted, message="已请求取消" if accepted else "当前没有运行中的同步")


@app.put("/sync/auto", response_model=BaseResponse[AutoSyncStatus])
async def enable_auto_sync(request: Request, body: AutoSyncRequest):
    """开启（或按新间隔重启）自动同步"""
    orchestrator = _orchestrator(request)
    orchestrator.enable_auto_sync(body.interval_seconds)
    return BaseResponse(data=AutoSyncStatus(enabled=True, interval_seconds=orchestrator.auto_sync_interval))


@app.delete("/sync/auto", response_model=BaseResponse[AutoSyncStatus])
async def disable_auto_sync(request: Request):
    """关闭自动同步"""
    _orchestrator(request).disable_auto_sync()
    return BaseResponse(data=AutoSyncStatus(enabled=False))


@app.get("/sync/last", response_model=BaseResponse[RunSummary])
async def last_run_summary(request: Request):
    """最近一次同步摘要"""
    summary = _orchestrator(request).get_last_run_summary()
    if summary is None:
        return BaseResponse(success=False, code=404, message="尚未执行过同步")
    return BaseResponse(data=summary)


@app.post("/sync/push", response_model=BaseResponse[PushResult])
async def push_outbound(request: Request):
    """执行一轮出站推送"""
    try:
        result = await request.app.state.pusher.push_pending()
    except (AuthError, StorageUnavailableError) as e:
        raise HTTPException(status_code=502, detail=str(e))
    return BaseResponse(data=result, message=f"推送 {result.pushed}，导出 {result.exported}，失败 {result.failed}")
