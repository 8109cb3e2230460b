"""
支付编排服务 HTTP 入口

启动时建立处理器注册表与回调处理器（ServiceContainer），关闭时释放网关客户端。
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import orders as orders_routes
from api.routes import payments as payments_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.container import build_container
from infrastructure.database import create_tables


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DEBUG:
        # 生产环境走 alembic upgrade head
        await create_tables()
        logger.info("database_tables_created")

    # 测试会预先注入 container，这里不覆盖
    container = getattr(app.state, "container", None)
    if container is None:
        container = build_container()
        app.state.container = container
    logger.info("payment_processors_ready", processors=container.registry.keys())

    yield

    await container.aclose()
    logger.info("application_shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        description="订单支付编排与收据一致性服务",
        lifespan=lifespan,
    )

    # 后添加的先执行：RequestID 先于访问日志绑定上下文
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(orders_routes.router, prefix="/api/v1")
    app.include_router(payments_routes.router, prefix="/api/v1")

    @app.get("/health", tags=["Health"])
    async def health_check():
        container = getattr(app.state, "container", None)
        processors = container.registry.keys() if container is not None else []
        return success_response(data={"status": "healthy", "processors": processors})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG, log_level=settings.log_level)
