"""Tests for the discover → serve → launch pipeline."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from aiohttp import web

from qmlrun.bundle_server import BundleMounts, BundleServer
from qmlrun.discovery import DeviceRecord
from qmlrun.errors import DeviceConnectionError, DeviceNotFoundError, JSONRPCError
from qmlrun.runner import (
    QMLRunner,
    RunOptions,
    RunState,
    normalize_manifest_url,
    run,
)
from qmlrun.session import SessionHandle


# ── Helpers ───────────────────────────────────────────────────────


def _stream():
    reader = asyncio.StreamReader()
    writer = MagicMock()
    writer.wait_closed = AsyncMock()
    return reader, writer


def _patch_client(launch: AsyncMock):
    """Patch DeviceClient so ``async with DeviceClient(...)`` yields a mock."""
    client = MagicMock()
    client.launch = launch
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = client
    return patch("qmlrun.runner.DeviceClient", factory)


async def _session_with_server(manifest_url, wait, entry_point, server):
    return SessionHandle(_stream(), _stream(), server=server)


async def _start_shared_server():
    mounts = BundleMounts()
    app = web.Application()
    mounts.setup(app)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", 0).start()
    return runner, mounts


# ── Tests ─────────────────────────────────────────────────────────


class TestManifestUrl:
    @pytest.mark.parametrize("url, expected", [
        ("http://cdn.local/apps/demo/manifest.json", "http://cdn.local/apps/demo"),
        ("http://cdn.local/apps/demo/", "http://cdn.local/apps/demo"),
        ("http://cdn.local/apps/demo", "http://cdn.local/apps/demo"),
    ])
    def test_normalize(self, url, expected):
        assert normalize_manifest_url(url) == expected


class TestAddressResolution:
    @pytest.mark.asyncio
    async def test_no_device_found(self, bundle_dir):
        launch = AsyncMock()
        with patch("qmlrun.runner.discovery.discover", AsyncMock(return_value=[])) as disc, \
                _patch_client(launch):
            runner = QMLRunner(bundle_dir, RunOptions(search_timeout=0.1))
            with pytest.raises(DeviceNotFoundError, match="device not found"):
                await runner.run()
        disc.assert_awaited_once_with(0.1, max_count=1)
        launch.assert_not_called()
        assert runner.state is RunState.FAILED

    @pytest.mark.asyncio
    async def test_discovered_device_used(self, bundle_dir):
        record = DeviceRecord("192.168.1.50", "127.0.0.1")
        launch = AsyncMock(side_effect=_session_with_server)
        with patch("qmlrun.runner.discovery.discover", AsyncMock(return_value=[record])), \
                _patch_client(launch) as factory:
            runner = QMLRunner(bundle_dir)
            handle = await runner.run()

        assert runner.state is RunState.DONE
        assert factory.call_args.args[0] == "192.168.1.50"
        server = launch.call_args.kwargs["server"]
        assert server.bound_address == "127.0.0.1"
        await handle.close()

    @pytest.mark.asyncio
    async def test_address_given_skips_discovery(self):
        launch = AsyncMock(return_value="handle")
        disc = AsyncMock()
        with patch("qmlrun.runner.discovery.discover", disc), _patch_client(launch):
            await run("http://cdn.local/demo/manifest.json", address="10.0.0.9")
        disc.assert_not_called()

    @pytest.mark.asyncio
    async def test_shared_options_rediscover_each_run(self):
        first = DeviceRecord("192.168.1.50", "192.168.1.2")
        second = DeviceRecord("192.168.1.60", "192.168.1.2")
        options = RunOptions(search_timeout=0.1)
        launch = AsyncMock(return_value="handle")
        disc = AsyncMock(side_effect=[[first], [second]])
        with patch("qmlrun.runner.discovery.discover", disc), \
                _patch_client(launch) as factory:
            await run("http://cdn.local/demo/manifest.json", options)
            await run("http://cdn.local/demo/manifest.json", options)

        assert disc.await_count == 2
        assert [c.args[0] for c in factory.call_args_list] == [
            "192.168.1.50", "192.168.1.60",
        ]
        assert options.address is None
        assert options.interface_address is None

    @pytest.mark.asyncio
    async def test_keyword_overrides_leave_options_untouched(self):
        options = RunOptions(address="10.0.0.9")
        launch = AsyncMock(return_value="handle")
        with _patch_client(launch) as factory:
            await run("http://cdn.local/demo/manifest.json", options, address="10.0.0.10")
        assert factory.call_args.args[0] == "10.0.0.10"
        assert options.address == "10.0.0.9"


class TestOwnedServer:
    @pytest.mark.asyncio
    async def test_manifest_url_points_at_server(self, bundle_dir):
        launch = AsyncMock(side_effect=_session_with_server)
        with _patch_client(launch):
            handle = await run(
                bundle_dir / "manifest.json",
                address="10.0.0.9",
                interface_address="127.0.0.1",
                entry_point="demo",
                wait=True,
            )

        manifest_url = launch.call_args.args[0]
        server = launch.call_args.kwargs["server"]
        assert manifest_url == f"http://127.0.0.1:{server.bound_port}/manifest.json"
        assert launch.call_args.kwargs["wait"] is True
        assert launch.call_args.kwargs["entry_point"] == "demo"
        async with httpx.AsyncClient(trust_env=False) as client:
            assert (await client.get(manifest_url)).status_code == 200

        await handle.close()
        assert server.closed
        async with httpx.AsyncClient(trust_env=False) as client:
            with pytest.raises(httpx.ConnectError):
                await client.get(manifest_url)

    @pytest.mark.asyncio
    async def test_rpc_error_closes_server(self, bundle_dir):
        launch = AsyncMock(side_effect=JSONRPCError("busy", 42))
        with _patch_client(launch):
            runner = QMLRunner(
                bundle_dir, RunOptions(address="10.0.0.9", interface_address="127.0.0.1")
            )
            with pytest.raises(JSONRPCError) as exc_info:
                await runner.run()
        assert exc_info.value.code == 42
        assert launch.call_args.kwargs["server"].closed
        assert runner.state is RunState.FAILED

    @pytest.mark.asyncio
    async def test_stream_error_closes_server(self, bundle_dir):
        launch = AsyncMock(side_effect=DeviceConnectionError("stdout refused"))
        with _patch_client(launch):
            with pytest.raises(DeviceConnectionError):
                await run(bundle_dir, address="10.0.0.9", interface_address="127.0.0.1")
        assert launch.call_args.kwargs["server"].closed

    @pytest.mark.asyncio
    async def test_local_ip_used_without_interface_address(self, bundle_dir):
        launch = AsyncMock(side_effect=_session_with_server)
        with _patch_client(launch), \
                patch("qmlrun.runner.get_local_ip", return_value="127.0.0.1") as local_ip:
            handle = await run(bundle_dir, address="10.0.0.9")
        local_ip.assert_called_once()
        assert launch.call_args.kwargs["server"].bound_address == "127.0.0.1"
        await handle.close()


class TestCallerServer:
    @pytest.mark.asyncio
    async def test_close_keeps_caller_server(self, bundle_dir):
        runner_obj, mounts = await _start_shared_server()
        launch = AsyncMock(side_effect=_session_with_server)
        try:
            with _patch_client(launch):
                handle = await run(
                    bundle_dir, address="10.0.0.9", server=runner_obj, mounts=mounts
                )
            server: BundleServer = launch.call_args.kwargs["server"]
            assert not server.owns_server
            assert mounts.prefixes == [server.prefix]

            await handle.close()
            assert mounts.prefixes == []
            assert runner_obj.addresses
        finally:
            await runner_obj.cleanup()

    @pytest.mark.asyncio
    async def test_failure_keeps_caller_server(self, bundle_dir):
        runner_obj, mounts = await _start_shared_server()
        launch = AsyncMock(side_effect=JSONRPCError("busy", 42))
        try:
            with _patch_client(launch):
                with pytest.raises(JSONRPCError):
                    await run(bundle_dir, address="10.0.0.9", server=runner_obj, mounts=mounts)
            port = runner_obj.addresses[0][1]
            async with httpx.AsyncClient(trust_env=False) as client:
                resp = await client.get(f"http://127.0.0.1:{port}/anything")
            assert resp.status_code == 404
        finally:
            await runner_obj.cleanup()


class TestDirectMode:
    @pytest.mark.asyncio
    async def test_url_passed_through(self):
        launch = AsyncMock(side_effect=_session_with_server)
        with _patch_client(launch), patch("qmlrun.runner.BundleServer") as server_cls:
            handle = await run("http://cdn.local/apps/demo/manifest.json", address="10.0.0.9")
        server_cls.assert_not_called()
        assert launch.call_args.args[0] == "http://cdn.local/apps/demo"
        assert launch.call_args.kwargs["server"] is None
        assert not handle.owns_server
        await handle.close()


class TestRunOptions:
    @pytest.mark.asyncio
    async def test_unknown_option_rejected(self):
        with pytest.raises(TypeError):
            await run("http://x/manifest.json", adress="10.0.0.9")
