"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.services.reconciliation_service import ReconciliationWorker
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.cache import init_redis_cache, shutdown_redis_cache
from infrastructure.database import create_tables
from infrastructure.events.publishers import (
    CeleryReconciliationPublisher,
    InlineReconciliationPublisher,
)
from infrastructure.external.ledger import get_ledger
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def _build_event_publisher(app: FastAPI):
    """对账派发方式：inline 在本进程后台运行，celery 交给任务队列"""
    if payment_settings.reconciliation.dispatch == "celery":
        from infrastructure.tasks import TaskDispatcher
        return CeleryReconciliationPublisher(TaskDispatcher())

    ledger = get_ledger()
    app.state.ledger = ledger
    worker = ReconciliationWorker(
        SQLAlchemyUnitOfWork,
        ledger,
        lease_seconds=payment_settings.reconciliation.lease_seconds,
    )
    publisher = InlineReconciliationPublisher(worker.reconcile)
    # 兜底：补做发布失败或进程重启丢失的对账
    cfg = payment_settings.reconciliation
    publisher.start_sweep(
        partial(worker.reconcile_pending, limit=cfg.sweep_batch_size, grace_seconds=cfg.sweep_grace_seconds),
        cfg.sweep_interval_seconds,
    )
    return publisher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )
    if settings.redis.url:
        try:
            await init_redis_cache()
        except Exception as exc:
            logger.error("redis_init_failed", error=str(exc))

    app.state.payment_gateway = get_payment_gateway()
    app.state.event_publisher = _build_event_publisher(app)
    logger.info(
        "payments_initialized",
        provider=app.state.payment_gateway.provider,
        reconciliation_dispatch=payment_settings.reconciliation.dispatch,
    )

    yield

    # 关闭时的清理工作
    publisher = app.state.event_publisher
    if isinstance(publisher, InlineReconciliationPublisher):
        await publisher.drain()
    await app.state.payment_gateway.aclose()
    ledger = getattr(app.state, "ledger", None)
    if ledger is not None:
        await ledger.aclose()
    if settings.redis.url:
        await shutdown_redis_cache()
        logger.info("redis_shutdown", message="Redis connection closed")
    logger.info("application_shutdown", message="Application shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="支付交易生命周期与账簿对账服务",
    )

    # 添加中间件（注意顺序：从下往上执行）
    # 1. Request ID中间件（最先执行，为后续中间件提供request_id）
    app.add_middleware(RequestIDMiddleware, trusted_proxies=settings.TRUSTED_PROXIES)

    # 2. 日志中间件（依赖request_id）
    app.add_middleware(LoggingMiddleware)

    # 3. CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册全局异常处理器
    register_exception_handlers(app)

    app.include_router(payments_routes.router, prefix="/api/v1")

    @app.get("/", tags=["Root"])
    async def root():
        """API根路径"""
        return success_response(
            data={
                "name": settings.PROJECT_NAME,
                "version": settings.VERSION,
                "docs": "/docs",
                "redoc": "/redoc"
            },
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        """健康检查端点"""
        return success_response(data={"status": "healthy"}, message="OK")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
