"""Session context: the components one preview or export run shares.

A session is created explicitly and handed to the controller or exporter;
there is no module-level instance. Reconfiguration swaps the whole context
(backends, cache, limiter) rather than mutating live objects.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from dp.backends.registry import BackendRegistry
from dp.cache import RenderCache
from dp.config import Configuration, load_configuration
from dp.logging import default_logger
from dp.paths import get_effective_cwd
from dp.ratelimit import RateLimiter
from dp.sanitizer import SvgSanitizer

if TYPE_CHECKING:
    import httpx
    from loguru import Logger

__all__ = ["Session"]


class Session:
    """Configuration plus the cache, limiter, sanitizer and backends built from it.

    Example:
        session = Session.from_workspace()
        controller = PreviewController(session, emit=print)
        ...
        await session.dispose()
    """

    def __init__(
        self,
        config: Configuration | None = None,
        *,
        workspace_root: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.workspace_root = workspace_root or get_effective_cwd()
        self.logger = logger or default_logger
        self._transport = transport
        self._build(config or Configuration())

    @classmethod
    def from_workspace(
        cls,
        workspace_root: Path | str | None = None,
        *,
        environment: str | None = None,
        logger: Logger | None = None,
    ) -> Session:
        """Load the layered configuration for a workspace and build a session."""
        root = Path(workspace_root).resolve() if workspace_root else get_effective_cwd()
        config = load_configuration(root, environment=environment)
        return cls(config, workspace_root=root, logger=logger)

    def _build(self, config: Configuration) -> None:
        self.config = config
        self.cache = RenderCache(config.cache_capacity, logger=self.logger)
        self.limiter = RateLimiter(config.remote_rate_limit_ms)
        self.sanitizer = SvgSanitizer(logger=self.logger)
        self.registry = BackendRegistry.from_config(
            config,
            limiter=self.limiter,
            sanitizer=self.sanitizer,
            workspace_root=self.workspace_root,
            transport=self._transport,
            logger=self.logger,
        )

    async def reconfigure(self, config: Configuration) -> None:
        """Replace the configuration, disposing backends and discarding the cache."""
        await self.registry.dispose()
        self.cache.clear()
        self._build(config)
        self.logger.info("Session reconfigured")

    async def dispose(self) -> None:
        await self.registry.dispose()
        self.cache.clear()

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()
