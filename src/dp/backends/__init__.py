"""Render backends and the registry that dispatches to them."""

from dp.backends.base import Backend
from dp.backends.container import ContainerBackend, PipelineResult, RenderedView
from dp.backends.local import LocalBackend
from dp.backends.registry import BackendRegistry, create_backend
from dp.backends.remote import RemoteBackend, encode_source, share_url

__all__ = [
    "Backend",
    "BackendRegistry",
    "ContainerBackend",
    "LocalBackend",
    "PipelineResult",
    "RemoteBackend",
    "RenderedView",
    "create_backend",
    "encode_source",
    "share_url",
]
