"""Ephemeral HTTP server for QML application bundles.

The device fetches ``manifest.json`` and the files it references from the
URL it is given, so the bundle directory has to be reachable over plain
HTTP for the lifetime of the session.  Two modes are supported:

Owned server:
  A fresh :class:`aiohttp.web.Application` is started on an OS-assigned
  port and torn down again by :meth:`BundleServer.close`.

Shared server:
  The caller already runs an application with :class:`BundleMounts`
  installed.  The bundle is mounted under its own prefix; closing only
  removes the mount and leaves the caller's server listening.

Directory listings are never served.
"""

from __future__ import annotations

import ipaddress
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from aiohttp import web

from qmlrun.errors import ListenError, QMLRunError
from qmlrun.netif import get_local_ip

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"

RequestFilter = Callable[[web.Request], Awaitable[Optional[web.StreamResponse]]]


def normalize_root(path: str | Path) -> Path:
    """Point *path* at the bundle directory, dropping a trailing manifest name."""
    path = Path(path)
    if path.name == MANIFEST_NAME:
        path = path.parent
    return path


@dataclass
class _Mount:
    root: Path
    request_filter: Optional[RequestFilter] = None


class BundleMounts:
    """Static-file routing that can be changed while the app is running.

    aiohttp freezes the router once an application starts, so bundles are
    looked up in a mutable prefix table from a single catch-all route.
    Call :meth:`setup` before the application is started.
    """

    def __init__(self) -> None:
        self._mounts: dict[str, _Mount] = {}

    def setup(self, app: web.Application) -> None:
        app.router.add_get("/{tail:.*}", self.handle)

    def mount(
        self,
        root: str | Path,
        prefix: Optional[str] = None,
        request_filter: Optional[RequestFilter] = None,
    ) -> str:
        """Serve *root* under *prefix* (generated when omitted) and return the prefix."""
        if prefix is None:
            prefix = f"/qml/{secrets.token_hex(4)}"
        prefix = prefix.rstrip("/")
        if prefix and not prefix.startswith("/"):
            raise ValueError(f"mount prefix must start with '/': {prefix!r}")
        if prefix in self._mounts:
            raise ValueError(f"prefix already mounted: {prefix!r}")
        self._mounts[prefix] = _Mount(Path(root).resolve(), request_filter)
        logger.debug("Mounted %s at '%s/'", root, prefix)
        return prefix

    def unmount(self, prefix: str) -> None:
        if self._mounts.pop(prefix, None) is not None:
            logger.debug("Unmounted '%s/'", prefix)

    @property
    def prefixes(self) -> list[str]:
        return list(self._mounts)

    def _match(self, path: str) -> tuple[str, Optional[_Mount]]:
        best = ""
        found: Optional[_Mount] = None
        for prefix, mount in self._mounts.items():
            if path != prefix and not path.startswith(prefix + "/"):
                continue
            if found is None or len(prefix) > len(best):
                best, found = prefix, mount
        return best, found

    async def handle(self, request: web.Request) -> web.StreamResponse:
        logger.debug("Request=%s %s", request.method, request.path)
        prefix, mount = self._match(request.path)
        if mount is None:
            raise web.HTTPNotFound()

        if mount.request_filter is not None:
            response = await mount.request_filter(request)
            if response is not None:
                return response

        relative = request.path[len(prefix):].lstrip("/")
        target = (mount.root / relative).resolve()
        try:
            target.relative_to(mount.root)
        except ValueError:
            raise web.HTTPForbidden()
        if not target.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(target)


class BundleServer:
    """Serves one bundle directory, either on its own listener or a shared one.

    Parameters
    ----------
    root:
        Bundle directory (or the path of its ``manifest.json``).
    host:
        Address to bind when the server is owned.  Also used in the
        manifest URL when a shared server listens on a wildcard address.
    server, mounts:
        A running :class:`aiohttp.web.AppRunner` and the :class:`BundleMounts`
        installed in its application.  Both or neither must be given.
    """

    def __init__(
        self,
        root: str | Path,
        host: Optional[str] = None,
        server: Optional[web.AppRunner] = None,
        mounts: Optional[BundleMounts] = None,
        request_filter: Optional[RequestFilter] = None,
    ) -> None:
        if (server is None) != (mounts is None):
            raise ValueError("server and mounts must be supplied together")
        self.root = normalize_root(root)
        self.host = host
        self.owns_server = server is None
        self._runner = server
        self._mounts = mounts
        self._request_filter = request_filter
        self._prefix: Optional[str] = None
        self._closed = False

    async def start(self) -> BundleServer:
        if not self.root.is_dir():
            raise QMLRunError(f"Bundle directory not found: {self.root}")

        if not self.owns_server:
            self._prefix = self._mounts.mount(
                self.root, request_filter=self._request_filter
            )
            logger.info("Serving %s on shared server at %s", self.root, self.manifest_url)
            return self

        mounts = BundleMounts()
        app = web.Application()
        mounts.setup(app)
        self._prefix = mounts.mount(self.root, prefix="", request_filter=self._request_filter)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, 0)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise ListenError(f"Cannot listen on {self.host or '*'}: {exc}") from exc

        self._mounts = mounts
        self._runner = runner
        logger.info("Serving %s at %s", self.root, self.manifest_url)
        return self

    async def close(self) -> None:
        """Release the bundle; owned servers stop listening, shared ones keep running."""
        if self._closed:
            return
        self._closed = True
        if self._mounts is not None and self._prefix is not None:
            self._mounts.unmount(self._prefix)
        if self.owns_server and self._runner is not None:
            await self._runner.cleanup()
            logger.debug("Bundle server for %s closed", self.root)
        self._runner = None

    async def __aenter__(self) -> BundleServer:
        return await self.start()

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def prefix(self) -> Optional[str]:
        return self._prefix

    def _sockname(self) -> tuple:
        if self._runner is None or not self._runner.addresses:
            raise RuntimeError("bundle server is not listening")
        addresses = self._runner.addresses
        # a wildcard bind listens on both families, each on its own port
        for sockname in addresses:
            if len(sockname) == 2:
                return sockname
        return addresses[0]

    @property
    def bound_address(self) -> str:
        return self._sockname()[0]

    @property
    def bound_port(self) -> int:
        return self._sockname()[1]

    @property
    def manifest_url(self) -> str:
        """Externally reachable URL of the bundle's ``manifest.json``."""
        host = self.bound_address
        if ipaddress.ip_address(host).is_unspecified:
            host = self.host or get_local_ip()
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.bound_port}{self._prefix or ''}/{MANIFEST_NAME}"
