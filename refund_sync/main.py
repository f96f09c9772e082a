"""
Refund-Sync 应用入口：FastAPI 应用实例、路由注册、生命周期和后台对账任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── 后台任务 ──────────────────────────────────────────────

# 配置读取失败时的重试间隔（秒）
DEFAULT_JOB_INTERVAL = 3600


async def _drift_sweep_task() -> None:
    """定期执行漂移扫描（间隔由 DRIFT_SWEEP_INTERVAL 决定，默认 1 小时）。"""
    from refund_sync.services.drift_scanner import DriftScanner
    from refund_sync.services.platform_config import get_reconcile_settings

    while True:
        interval = DEFAULT_JOB_INTERVAL
        try:
            interval = get_reconcile_settings()["drift_sweep_interval"]
            scanner = DriftScanner.from_settings()
            await asyncio.to_thread(scanner.sweep, "timer")
        except Exception as e:
            logger.error("漂移扫描任务异常: %s", e)
        await asyncio.sleep(interval)


async def _verify_recent_task() -> None:
    """定期核验近期退款标记，与漂移扫描互不依赖。"""
    from refund_sync.services.platform_config import get_reconcile_settings
    from refund_sync.services.verification_corrector import VerificationCorrector

    while True:
        interval = DEFAULT_JOB_INTERVAL
        try:
            settings = get_reconcile_settings()
            interval = settings["verify_interval"]
            corrector = VerificationCorrector.from_settings()
            window = timedelta(hours=settings["verify_hours_back"])
            await asyncio.to_thread(corrector.verify, window, "timer")
        except Exception as e:
            logger.error("退款核验任务异常: %s", e)
        await asyncio.sleep(interval)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台对账任务。"""
    from refund_sync.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_drift_sweep_task()))
        tasks.append(asyncio.create_task(_verify_recent_task()))
        logger.info("后台任务已启动：漂移扫描、近期退款核验")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Refund-Sync", description="退款状态对账服务", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from refund_sync.routes.refund import router as refund_router
from refund_sync.routes.admin import router as admin_router

app.include_router(refund_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
