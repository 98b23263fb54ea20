"""Discover → serve → launch → attach.

:class:`QMLRunner` drives one launch request through a strict pipeline;
each stage starts only after the previous one completed:

  RESOLVING_ADDRESS   only when no device address was given
  PREPARING_SERVER    reuse the caller's server, or start an owned one
  LAUNCHING           JSON-RPC call + stream attach
  DONE / FAILED       terminal, nothing is retried

A server started here is closed before any launch error propagates; a
server supplied by the caller is never closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Optional

from aiohttp import web

from qmlrun import discovery
from qmlrun.bundle_server import MANIFEST_NAME, BundleMounts, BundleServer, RequestFilter
from qmlrun.errors import DeviceNotFoundError
from qmlrun.netif import get_local_ip
from qmlrun.rpc import DEFAULT_ENTRY_POINT, DEFAULT_RPC_TIMEOUT, DeviceClient
from qmlrun.session import SessionHandle

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    RESOLVING_ADDRESS = "resolving_address"
    PREPARING_SERVER = "preparing_server"
    LAUNCHING = "launching"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunOptions:
    """Options for a single launch."""

    address: Optional[str] = None
    interface_address: Optional[str] = None
    search_timeout: Optional[float] = None
    entry_point: str = DEFAULT_ENTRY_POINT
    wait: bool = False
    server: Optional[web.AppRunner] = None
    mounts: Optional[BundleMounts] = None
    request_filter: Optional[RequestFilter] = None
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT


def is_url(path_or_url: str | Path) -> bool:
    return isinstance(path_or_url, str) and path_or_url.startswith(("http://", "https://"))


def normalize_manifest_url(url: str) -> str:
    """Strip a trailing ``manifest.json`` and trailing slash from *url*."""
    if url.endswith(MANIFEST_NAME):
        url = url[: -len(MANIFEST_NAME)]
    return url.rstrip("/")


class QMLRunner:
    """Runs one bundle (local directory or remote URL) on a device."""

    def __init__(self, path_or_url: str | Path, options: Optional[RunOptions] = None) -> None:
        self.path_or_url = path_or_url
        # resolved addresses are written here, never into the caller's options
        self.options = replace(options) if options is not None else RunOptions()
        self.state: Optional[RunState] = None

    def _enter(self, state: RunState) -> None:
        logger.debug("Run state: %s -> %s", self.state, state.value)
        self.state = state

    async def run(self) -> SessionHandle:
        try:
            if not self.options.address:
                await self._resolve_address()
            if is_url(self.path_or_url):
                manifest_url = normalize_manifest_url(self.path_or_url)
                handle = await self._launch(manifest_url, server=None)
            else:
                server = await self._prepare_server()
                handle = await self._launch(server.manifest_url, server=server)
        except Exception:
            self._enter(RunState.FAILED)
            raise
        self._enter(RunState.DONE)
        return handle

    async def _resolve_address(self) -> None:
        self._enter(RunState.RESOLVING_ADDRESS)
        records = await discovery.discover(self.options.search_timeout, max_count=1)
        if not records:
            raise DeviceNotFoundError("device not found")
        self.options.address = records[0].address
        self.options.interface_address = records[0].interface_address
        logger.info("Using device at %s", self.options.address)

    async def _prepare_server(self) -> BundleServer:
        self._enter(RunState.PREPARING_SERVER)
        opts = self.options
        host = opts.interface_address or get_local_ip()
        logger.debug("Connect device=%s interface_address=%s", opts.address, host)
        server = BundleServer(
            self.path_or_url,
            host=host,
            server=opts.server,
            mounts=opts.mounts,
            request_filter=opts.request_filter,
        )
        return await server.start()

    async def _launch(
        self, manifest_url: str, server: Optional[BundleServer]
    ) -> SessionHandle:
        self._enter(RunState.LAUNCHING)
        opts = self.options
        try:
            async with DeviceClient(opts.address, timeout=opts.rpc_timeout) as client:
                return await client.launch(
                    manifest_url,
                    wait=opts.wait,
                    entry_point=opts.entry_point,
                    server=server,
                )
        except BaseException:
            if server is not None:
                await server.close()
            raise


async def run(
    path_or_url: str | Path,
    options: Optional[RunOptions] = None,
    **kwargs,
) -> SessionHandle:
    """Launch *path_or_url* on a device and return the live session.

    Keyword arguments override the matching :class:`RunOptions` fields.
    """
    options = replace(options or RunOptions(), **kwargs)
    return await QMLRunner(path_or_url, options).run()
