import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional
from fastapi import FastAPI
from contextlib import asynccontextmanager
from rich.logging import RichHandler

from sbmanager.api.errors import register_error_handlers
from sbmanager.api.v2.api import router as api_v2_router
from sbmanager.core.config import ManagerConfig
from sbmanager.repos.config_repo import ConfigRepo
from sbmanager.repos.store_repo import JSONStore
from sbmanager.services.apply_service import ApplyCoordinator
from sbmanager.services.daemon_service import get_service_manager
from sbmanager.services.health_service import HealthChecker
from sbmanager.services.kernel_service import KernelService
from sbmanager.services.singbox_config_service import SingBoxConfigService
from sbmanager.services.subscription_service import SubscriptionScheduler, SubscriptionService
from sbmanager.services.supervisor import ProcessSupervisor
from sbmanager.utils.hosts import read_system_hosts

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 3


def _file_handler(path: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    return handler


def configure_logging(config: ManagerConfig):
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="[blue]%(name)s[/]  %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, markup=True)],
        force=True
    )

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        logger = logging.getLogger(logger_name)
        logger.handlers = []
        logger.propagate = True

    os.makedirs(config.log_dir, exist_ok=True)
    logging.getLogger().addHandler(_file_handler(os.path.join(config.log_dir, "sbm.log")))

    # sing-box output goes to its own file, not the console or sbm.log
    engine_logger = logging.getLogger("sbmanager.engine")
    engine_logger.handlers = [_file_handler(os.path.join(config.log_dir, "singbox.log"))]
    engine_logger.propagate = False

    if not config.USE_API_KEY:
        logging.getLogger(__name__).warning("API Key authentication is DISABLED. Do not use in production environments.")


def create_app(config: Optional[ManagerConfig] = None, setup_logging: bool = True) -> FastAPI:
    config = config or ManagerConfig()
    if setup_logging:
        configure_logging(config)

    # 1. Storage
    store = JSONStore(config.data_dir)
    config_repo = ConfigRepo(config.data_dir)

    # 2. Engine
    singbox_path, config_path = config_repo.engine_paths(store.get_settings())
    supervisor = ProcessSupervisor(
        singbox_path,
        config_path,
        config.data_dir,
        poll_interval=config.MONITOR_INTERVAL,
        failure_threshold=config.MONITOR_FAILURE_THRESHOLD,
        max_log_lines=config.MAX_LOG_LINES,
    )
    health = HealthChecker(supervisor, max_failures=config.HEALTH_CHECK_MAX_FAILURES)
    health.configure(store.get_settings())

    # 3. Apply pipeline and subscriptions
    coordinator = ApplyCoordinator(
        store,
        SingBoxConfigService(),
        config_repo,
        supervisor,
        hosts_loader=read_system_hosts if config.READ_SYSTEM_HOSTS else None,
    )
    subscriptions = SubscriptionService(store)
    scheduler = SubscriptionScheduler(subscriptions, coordinator)
    kernel = KernelService(store, config_repo)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        coordinator.start()
        scheduler.start()
        health.start()
        yield
        health.stop()
        await kernel.close()
        await scheduler.stop()
        coordinator.shutdown()
        supervisor.close()

    app = FastAPI(
        title="sing-box Manager",
        docs_url="/api/v2/docs",
        openapi_url="/api/v2/openapi.json",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.store = store
    app.state.supervisor = supervisor
    app.state.coordinator = coordinator
    app.state.subscriptions = subscriptions
    app.state.scheduler = scheduler
    app.state.health = health
    app.state.kernel = kernel
    app.state.service_manager = get_service_manager()

    register_error_handlers(app)
    app.include_router(api_v2_router, prefix="/api/v2")

    return app


if __name__ == "__main__":
    import uvicorn

    settings = ManagerConfig()
    uvicorn.run("main:create_app", factory=True, host=settings.WEB_HOST, port=settings.WEB_PORT)
