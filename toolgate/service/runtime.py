from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from toolgate.config import Settings, StoreBackend, get_settings
from toolgate.logging import get_logger
from toolgate.service.approvals import ApprovalCoordinator
from toolgate.service.auth import AuthService
from toolgate.service.events import EventBus
from toolgate.service.executions import ExecutionRegistry
from toolgate.service.maintenance import MaintenanceWorker
from toolgate.service.policy import PermissionPolicy
from toolgate.service.runners import RunnerRegistry, build_default_runners
from toolgate.service.sessions import SessionRegistry
from toolgate.service.tokens import TokenAuthority
from toolgate.service.tools import ToolCatalog
from toolgate.storage.common import EntityStore
from toolgate.storage.memory import MemoryStore
from toolgate.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> EntityStore:
    if settings.store_backend == StoreBackend.REDIS:
        logger.info("store_backend_redis", redis_url=_mask_url_password(settings.redis_url))
        store = RedisStore(settings.redis_url, prefix=settings.redis_key_prefix)
        store.verify_connection()
        return store
    return MemoryStore()


class Runtime:
    """Owns the registries for one application instance.

    Built once at startup and handed to the transport layer; nothing here is
    reachable through module globals.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[EntityStore] = None,
        catalog: Optional[ToolCatalog] = None,
        runners: Optional[RunnerRegistry] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            catalog_path=self.settings.tool_catalog_path,
        )
        self.store = store or build_store(self.settings)
        self.events = EventBus(queue_size=self.settings.event_queue_size)
        self.tokens = TokenAuthority.from_settings(self.settings)
        self.sessions = SessionRegistry.from_settings(
            self.settings,
            self.tokens,
            store=self.store,
            user_loader=lambda user_id: self.store.load("user", user_id),
        )
        self.auth = AuthService(self.store, self.sessions)
        self.policy = PermissionPolicy(self.settings.tool_permission_overrides)
        if catalog is None:
            catalog_kwargs = dict(
                default_timeout=self.settings.default_tool_timeout_seconds,
                max_timeout=self.settings.max_tool_timeout_seconds,
            )
            catalog = (
                ToolCatalog.from_file(self.settings.tool_catalog_path, **catalog_kwargs)
                if self.settings.tool_catalog_path
                else ToolCatalog(**catalog_kwargs)
            )
        self.catalog = catalog
        self.runners = runners or build_default_runners()
        self.executions = ExecutionRegistry(
            self.catalog,
            self.policy,
            self.runners,
            self.events,
            max_concurrent=self.settings.max_concurrent_executions,
            max_concurrent_per_user=self.settings.max_concurrent_executions_per_user,
            store=self.store,
        )
        self.approvals = ApprovalCoordinator(
            self.executions,
            self.events,
            default_timeout=timedelta(seconds=self.settings.approval_timeout_seconds),
            max_escalation_levels=self.settings.max_escalation_levels,
            retention=timedelta(hours=self.settings.approval_retention_hours),
        )
        self.maintenance = MaintenanceWorker(
            self.sessions,
            self.executions,
            self.approvals,
            interval=self.settings.maintenance_interval_seconds,
            history_retention=timedelta(hours=self.settings.execution_history_retention_hours),
        )
        self.auth.ensure_bootstrap_admin(
            self.settings.bootstrap_admin_username, self.settings.bootstrap_admin_password
        )

    async def startup(self) -> None:
        self.sessions.restore()
        await self.executions.restore()
        if self.settings.maintenance_enabled:
            await self.maintenance.start()
        logger.info("runtime_started", tools=len(self.catalog.list()), runners=self.runners.names())

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.approvals.shutdown()
        await self.executions.shutdown()
        if isinstance(self.store, RedisStore):
            await self.store.close()
        logger.info("runtime_closed")
