"""qmlrun: launch QML applications on developer-mode devices.

Discovers a device over mDNS, serves a local application bundle over an
ephemeral HTTP server and asks the device to fetch and run it, streaming
its stdout/stderr back.

Quickstart::

    from qmlrun import run

    session = await run("./apps/demo")
    session.on("stdout", lambda chunk: print(chunk.decode(), end=""))
    await session.wait_closed()
    await session.close()
"""

from qmlrun.discovery import DeviceRecord, discover, search
from qmlrun.errors import (
    DeviceConnectionError,
    DeviceNotFoundError,
    JSONRPCError,
    ListenError,
    QMLRunError,
)
from qmlrun.runner import RunOptions, run
from qmlrun.session import SessionHandle

__version__ = "1.0.0"

__all__ = [
    "DeviceConnectionError",
    "DeviceNotFoundError",
    "DeviceRecord",
    "JSONRPCError",
    "ListenError",
    "QMLRunError",
    "RunOptions",
    "SessionHandle",
    "discover",
    "run",
    "search",
]
