"""JSON-RPC launch call against the device's developer endpoint.

The device answers ``debug_qml_app`` with the ports of two TCP streams
carrying the application's stdout and stderr.  The device only accepts
the stderr connection after stdout is attached, so the two connects are
strictly sequential.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from qmlrun.errors import DeviceConnectionError, JSONRPCError
from qmlrun.session import Closable, SessionHandle, Stream

logger = logging.getLogger(__name__)

RPC_PATH = "/pub/devel"
LAUNCH_METHOD = "debug_qml_app"
DEFAULT_ENTRY_POINT = "main"
DEFAULT_RPC_TIMEOUT = 10.0


def build_launch_request(
    manifest_url: str,
    entry_point: str = DEFAULT_ENTRY_POINT,
    wait: bool = False,
) -> dict[str, Any]:
    """Return the JSON-RPC 2.0 envelope for a launch request."""
    return {
        "id": "0",
        "jsonrpc": "2.0",
        "method": LAUNCH_METHOD,
        "params": {
            "entry_point": entry_point,
            "manifest_url": manifest_url,
            "wait": bool(wait),
        },
    }


def parse_launch_response(body: Any) -> tuple[int, int]:
    """Extract ``(stdout_port, stderr_port)`` or raise :class:`JSONRPCError`."""
    if not isinstance(body, dict):
        raise JSONRPCError("response is not a JSON object")

    error = body.get("error")
    if error:
        if isinstance(error, dict):
            raise JSONRPCError(str(error.get("message", "")), error.get("code"))
        raise JSONRPCError(str(error))

    result = body.get("result")
    if not isinstance(result, dict):
        raise JSONRPCError("response carries no result")
    ports = result.get("stdout_port"), result.get("stderr_port")
    if not all(isinstance(p, int) and not isinstance(p, bool) for p in ports):
        raise JSONRPCError(f"invalid stream ports in result: {result}")
    return ports[0], ports[1]


async def _open_stream(host: str, port: int, name: str, timeout: float) -> Stream:
    try:
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        raise DeviceConnectionError(
            f"Cannot open {name} stream at {host}:{port}: {exc}"
        ) from exc


class DeviceClient:
    """Async client for a single device's developer endpoint.

    *address* is what discovery reports (``host`` or ``host:port``); the
    HTTP call goes to that address and the streams to its host part.
    """

    def __init__(
        self,
        address: str,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.address = address
        self.timeout = timeout
        self.url = f"http://{address}{RPC_PATH}"
        self.host = httpx.URL(f"http://{address}").host
        # devices are on the local network, never reached through a proxy
        self._client = httpx.AsyncClient(
            timeout=timeout, transport=transport, trust_env=False
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DeviceClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def call(self, payload: dict[str, Any]) -> Any:
        """POST a JSON-RPC envelope and return the decoded response body."""
        logger.debug("RPC %s -> %s", payload, self.url)
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TransportError as exc:
            raise DeviceConnectionError(f"Cannot reach device at {self.url}: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise JSONRPCError(
                f"invalid response from device (HTTP {response.status_code})"
            ) from exc
        logger.debug("Device response=%s", body)
        return body

    async def launch(
        self,
        manifest_url: str,
        wait: bool = False,
        entry_point: str = DEFAULT_ENTRY_POINT,
        server: Optional[Closable] = None,
    ) -> SessionHandle:
        """Ask the device to run *manifest_url* and attach to its output.

        *server* is handed to the returned session, which closes it on
        :meth:`SessionHandle.close`.  Nothing is closed here on failure.
        """
        body = await self.call(build_launch_request(manifest_url, entry_point, wait))
        stdout_port, stderr_port = parse_launch_response(body)

        stdout = await _open_stream(self.host, stdout_port, "stdout", self.timeout)
        try:
            stderr = await _open_stream(self.host, stderr_port, "stderr", self.timeout)
        except BaseException:
            stdout[1].close()
            raise

        logger.info(
            "Attached to %s (stdout=%d, stderr=%d)", self.host, stdout_port, stderr_port
        )
        handle = SessionHandle(stdout, stderr, server=server)
        handle.start()
        return handle


async def launch(
    manifest_url: str,
    wait: bool,
    device_address: str,
    entry_point: str = DEFAULT_ENTRY_POINT,
    timeout: float = DEFAULT_RPC_TIMEOUT,
) -> SessionHandle:
    """One-shot launch against *device_address*."""
    async with DeviceClient(device_address, timeout=timeout) as client:
        return await client.launch(manifest_url, wait=wait, entry_point=entry_point)
