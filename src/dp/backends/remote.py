"""Remote rendering through a Kroki-compatible HTTP service.

Requests use the GET form ``{endpoint}/{type}/{svg|png}/{encoded}`` where the
source is deflated (zlib, level 9) and base64url-encoded. Every request goes
through the session's rate limiter.

A failed SVG render is retried once as PNG when ``format_fallback`` is on.
The fallback covers every failure, syntax errors included; when both attempts
fail the SVG diagnostic is reported first, verbatim, so a syntax error is not
hidden behind the PNG attempt.
"""

from __future__ import annotations

import base64
import zlib
from typing import TYPE_CHECKING

import httpx

from dp.backends.base import Backend
from dp.errors import (
    ClientError,
    ConnectionFailure,
    DiagramError,
    RenderFailure,
    RenderTimeout,
    SanitizationFailure,
    ServerError,
)
from dp.http_client import create_client
from dp.logging import LogSpan
from dp.models import BackendCapability, BackendKind, DiagramType, RenderResult, Theme
from dp.ratelimit import RateLimiter
from dp.sanitizer import SvgSanitizer

if TYPE_CHECKING:
    from loguru import Logger

    from dp.config import Configuration

__all__ = ["RemoteBackend", "decode_source", "encode_source", "share_url"]

# Longest backend error body kept in a diagnostic
MAX_DIAGNOSTIC_LENGTH = 1000


def encode_source(source: str) -> str:
    """Encode diagram source for a Kroki GET URL.

    Uses deflate compression + base64url encoding as required by Kroki.
    """
    compressed = zlib.compress(source.encode("utf-8"), level=9)
    return base64.urlsafe_b64encode(compressed).decode("ascii")


def decode_source(encoded: str) -> str:
    """Inverse of encode_source."""
    compressed = base64.urlsafe_b64decode(encoded)
    return zlib.decompress(compressed).decode("utf-8")


def share_url(
    endpoint: str, content: str, diagram_type: DiagramType | str, fmt: str = "svg"
) -> str:
    """Build a shareable GET URL for the rendered diagram."""
    return f"{endpoint.rstrip('/')}/{diagram_type}/{fmt}/{encode_source(content)}"


def _with_fallback_detail(svg_error: DiagramError, png_error: DiagramError) -> DiagramError:
    """Report the SVG failure, noting that the PNG retry failed too."""
    message = f"{svg_error.args[0]} (PNG fallback failed: {png_error.args[0]})"
    if isinstance(svg_error, RenderFailure):
        return type(svg_error)(message, status=svg_error.status)
    return RenderFailure(message)


class RemoteBackend(Backend):
    """Renders any Kroki-supported type over HTTP.

    Availability is assumed until a render proves otherwise; there is no probe
    request cheap enough to be worth sending.
    """

    kind = BackendKind.REMOTE

    def __init__(
        self,
        config: Configuration,
        *,
        limiter: RateLimiter | None = None,
        sanitizer: SvgSanitizer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(config, logger=logger)
        self.endpoint = config.remote_endpoint.rstrip("/")
        self._limiter = limiter or RateLimiter(config.remote_rate_limit_ms)
        self._sanitizer = sanitizer or SvgSanitizer(logger=self._logger)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_client(self.config, transport=self._transport)
        return self._client

    async def probe(self) -> BackendCapability:
        return BackendCapability(
            backend_kind=self.kind,
            available=True,
            supported_types=frozenset(DiagramType),
        )

    async def render(
        self,
        content: str,
        diagram_type: DiagramType,
        theme: Theme = Theme.LIGHT,
        *,
        source_path: str | None = None,
    ) -> RenderResult:
        try:
            return await self._render_svg(content, diagram_type)
        except DiagramError as svg_error:
            if not self.config.format_fallback:
                raise
            self._logger.debug(f"SVG render failed, retrying as PNG: {svg_error.args[0]}")
            try:
                return await self._render_png(content, diagram_type)
            except DiagramError as png_error:
                raise _with_fallback_detail(svg_error, png_error) from svg_error

    async def _render_svg(self, content: str, diagram_type: DiagramType) -> RenderResult:
        response = await self._request(content, diagram_type, "svg")
        clean = self._sanitizer.sanitize(response.text)
        if not clean:
            raise SanitizationFailure("Remote service returned SVG that could not be sanitized")
        return RenderResult.svg(clean)

    async def _render_png(self, content: str, diagram_type: DiagramType) -> RenderResult:
        response = await self._request(content, diagram_type, "png")
        encoded = base64.b64encode(response.content).decode("ascii")
        return RenderResult.png(f"data:image/png;base64,{encoded}")

    async def _request(
        self, content: str, diagram_type: DiagramType, fmt: str
    ) -> httpx.Response:
        """Issue one rate-limited GET and map failures onto the error taxonomy."""
        url = share_url(self.endpoint, content, diagram_type, fmt)
        client = self._get_client()

        with LogSpan(
            span="remote.render",
            logger=self._logger,
            diagramType=str(diagram_type),
            format=fmt,
            url=url,
        ) as span:
            try:
                response = await self._limiter.throttle(lambda: client.get(url))
            except httpx.TimeoutException as e:
                raise RenderTimeout(
                    f"Request to {self.endpoint} timed out after {self.config.remote_timeout_s}s"
                ) from e
            except httpx.RequestError as e:
                raise ConnectionFailure(f"Cannot reach rendering service at {self.endpoint}: {e}") from e

            span.add(status=response.status_code, responseLen=len(response.content))
            status = response.status_code
            if 400 <= status < 500:
                detail = response.text.strip()[:MAX_DIAGNOSTIC_LENGTH] or response.reason_phrase
                raise ClientError(f"HTTP {status}: {detail}", status=status)
            if status >= 500:
                detail = response.text.strip()[:MAX_DIAGNOSTIC_LENGTH] or response.reason_phrase
                raise ServerError(f"HTTP {status}: {detail}", status=status)
            if status != 200:
                raise RenderFailure(f"HTTP {status}: unexpected response", status=status)
            return response

    async def dispose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
