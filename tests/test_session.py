"""Tests for PortalSession."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close
from yarl import URL

from device_portal.connection import ConnectionDescriptor, Credentials, DevicePlatform
from device_portal.errors import UnsupportedOperationError
from device_portal.events import ConnectionPhase, ConnectionStatus
from device_portal.protocol import (
    DEVICE_FAMILY_API,
    HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API,
    IP_CONFIG_API,
    OS_INFO_API,
    ROOT_CERTIFICATE_API,
    SYSTEM_PERF_API,
    WIFI_INTERFACES_API,
    WIFI_NETWORK_API,
    hex64_encode,
)
from device_portal.session import PortalSession

from .conftest import (
    FakeWebSocket,
    attach_tls,
    create_mock_response,
    der,
    make_router,
    requested,
)

IP_CONFIG = {
    "Adapters": [
        {
            "Description": "Loopback",
            "IpAddresses": [{"IpAddress": "127.0.0.1", "Mask": "255.0.0.0"}],
        },
        {
            "Description": "Wireless",
            "IpAddresses": [
                {"IpAddress": "169.254.3.4", "Mask": "255.255.0.0"},
                {"IpAddress": "10.0.0.5", "Mask": "255.255.255.0"},
            ],
        },
    ]
}


def _os_info(platform: str = "Virtual Machine", edition: str = "Professional"):
    return {
        "ComputerName": "DEVBOX",
        "Language": "en-US",
        "OsEdition": edition,
        "OsEditionId": 48,
        "OsVersion": "19041.1.amd64fre.vb_release.191206-1406",
        "Platform": platform,
    }


def _routes(
    *,
    family: str = "Windows.Desktop",
    platform: str = "Virtual Machine",
    certificate: bytes | None = None,
) -> dict:
    routes = {
        ("GET", DEVICE_FAMILY_API): create_mock_response(
            json_data={"DeviceType": family}
        ),
        ("GET", OS_INFO_API): create_mock_response(json_data=_os_info(platform)),
        ("GET", IP_CONFIG_API): create_mock_response(json_data=IP_CONFIG),
    }
    if certificate is not None:
        routes[("GET", ROOT_CERTIFICATE_API)] = create_mock_response(
            read_data=certificate
        )
    return routes


@pytest.fixture
def connection() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        "http://192.168.1.10:8080", Credentials("admin", "secret")
    )


@pytest.fixture
def portal(mock_session, connection) -> PortalSession:
    return PortalSession(connection, session=mock_session)


async def test_session_creation(portal):
    """Test initial session state."""
    assert portal.address == "192.168.1.10:8080"
    assert portal.connection_status == ConnectionStatus.NONE
    assert portal.connection_phase == ConnectionPhase.IDLE
    assert portal.connection_http_status is None
    assert portal.platform == DevicePlatform.UNKNOWN
    assert portal.platform_name == "Unknown"
    assert portal.csrf_token is None


class TestConnect:
    """Tests for PortalSession.connect()."""

    async def test_phase_sequence(self, mock_session, portal):
        routes = _routes()
        routes[("GET", WIFI_INTERFACES_API)] = create_mock_response(
            json_data={"Interfaces": [{"GUID": "{wifi-1}", "Index": 1}]}
        )
        routes[("POST", WIFI_NETWORK_API)] = create_mock_response()
        mock_session.request.side_effect = make_router(routes)
        events = []
        portal.on_connection_status(events.append)

        assert await portal.connect(
            ssid="Lab", ssid_key="hunter2", update_connection=True
        )

        assert [e.phase for e in events] == [
            ConnectionPhase.ACQUIRING_CERTIFICATE,
            ConnectionPhase.REQUESTING_OPERATING_SYSTEM_INFORMATION,
            ConnectionPhase.DETERMINING_CONNECTION_REQUIREMENTS,
            ConnectionPhase.CONNECTING_TO_TARGET_NETWORK,
            ConnectionPhase.UPDATING_DEVICE_ADDRESS,
            ConnectionPhase.IDLE,
        ]
        assert [e.status for e in events[:-1]] == [ConnectionStatus.CONNECTING] * 5
        assert events[-1].status == ConnectionStatus.CONNECTED
        assert events[3].message == "Connecting to Lab network"
        assert portal.connection_status == ConnectionStatus.CONNECTED
        assert portal.connection_http_status == 200

    async def test_without_certificate_stays_http(self, mock_session, portal):
        mock_session.request.side_effect = make_router(_routes())

        assert await portal.connect(update_connection=True)

        assert portal.connection.base_uri == URL("http://10.0.0.5:8080")
        assert portal.device_family == "Windows.Desktop"
        assert portal.platform == DevicePlatform.VIRTUAL_MACHINE
        assert portal.os_version.startswith("19041")

    async def test_acquired_certificate_switches_to_https(
        self, mock_session, portal, device_root
    ):
        mock_session.request.side_effect = make_router(
            _routes(certificate=der(device_root[0]))
        )

        assert await portal.connect(update_connection=True)

        assert portal.connection.base_uri == URL("https://10.0.0.5:8080")
        assert portal.connection.web_socket_uri == URL("wss://10.0.0.5:8080")
        assert portal.connection.root_certificate == der(device_root[0])

    async def test_address_kept_without_update(self, mock_session, portal):
        mock_session.request.side_effect = make_router(_routes())

        assert await portal.connect()

        assert portal.connection.base_uri == URL("http://192.168.1.10:8080")
        assert (
            "GET",
            IP_CONFIG_API,
        ) not in requested(mock_session)

    async def test_failure_reports_phase(self, mock_session, portal):
        routes = _routes()
        routes[("GET", OS_INFO_API)] = create_mock_response(
            status=500,
            json_data={"ErrorCode": -2147467259, "Reason": "Unspecified error"},
            reason="Internal Server Error",
        )
        mock_session.request.side_effect = make_router(routes)
        events = []
        portal.on_connection_status(events.append)

        assert not await portal.connect(update_connection=True)

        assert portal.connection_status == ConnectionStatus.FAILED
        assert portal.connection_phase == ConnectionPhase.IDLE
        assert portal.connection_http_status == 500
        assert portal.connection_failed_description == "500 Unspecified error"
        assert events[-1].message.startswith(
            "Device connection failed: Requesting operating system information"
        )
        assert ConnectionPhase.UPDATING_DEVICE_ADDRESS not in [
            e.phase for e in events
        ]

    async def test_transport_failure_has_no_status(self, mock_session, portal):
        import aiohttp

        mock_session.request.side_effect = aiohttp.ClientConnectionError("refused")

        assert not await portal.connect()

        assert portal.connection_status == ConnectionStatus.FAILED
        assert portal.connection_http_status is None
        assert portal.connection_failed_description == "refused"

    async def test_hololens_https_setting_not_found(
        self, mock_session, portal, device_root
    ):
        mock_session.request.side_effect = make_router(
            _routes(
                family="Windows.Holographic",
                platform="HoloLens",
                certificate=der(device_root[0]),
            )
        )

        assert await portal.connect(update_connection=True)

        # USB platforms use the default port of the new address
        assert portal.connection.base_uri == URL("http://10.0.0.5")
        assert (
            "GET",
            HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API,
        ) in requested(mock_session)

    async def test_hololens_https_required(self, mock_session, portal):
        routes = _routes(family="Windows.Holographic", platform="HoloLens")
        routes[("GET", HOLOGRAPHIC_WEB_MANAGEMENT_HTTPS_SETTINGS_API)] = (
            create_mock_response(json_data={"httpsRequired": True})
        )
        mock_session.request.side_effect = make_router(routes)

        assert await portal.connect(update_connection=True)

        assert portal.connection.base_uri == URL("https://10.0.0.5")

    async def test_ssid_uses_first_interface(self, mock_session, portal):
        routes = _routes()
        routes[("GET", WIFI_INTERFACES_API)] = create_mock_response(
            json_data={"Interfaces": [{"GUID": "{first}"}, {"GUID": "{second}"}]}
        )
        routes[("POST", WIFI_NETWORK_API)] = create_mock_response()
        mock_session.request.side_effect = make_router(routes)

        assert await portal.connect(ssid="Lab", ssid_key="hunter2")

        call = next(
            c
            for c in mock_session.request.call_args_list
            if c.args[0] == "POST"
        )
        query = URL(str(call.args[1])).query
        assert query["interface"] == "{first}"
        assert query["ssid"] == hex64_encode("Lab")
        assert query["key"] == hex64_encode("hunter2")
        assert query["op"] == "connect"
        assert query["createprofile"] == "yes"

    async def test_ssid_without_wifi_fails(self, mock_session, portal):
        routes = _routes()
        routes[("GET", WIFI_INTERFACES_API)] = create_mock_response(
            json_data={"Interfaces": []}
        )
        mock_session.request.side_effect = make_router(routes)

        assert not await portal.connect(ssid="Lab")

        assert portal.connection_failed_description == "Device has no wifi interface"

    async def test_https_device_trusted_through_acquired_certificate(
        self, mock_session, device_root, device_leaf
    ):
        connection = ConnectionDescriptor(
            "https://192.168.1.10", Credentials("admin", "secret")
        )
        portal = PortalSession(connection, session=mock_session)
        routes = _routes(certificate=der(device_root[0]))
        attach_tls(routes[("GET", DEVICE_FAMILY_API)], der(device_leaf))
        attach_tls(routes[("GET", OS_INFO_API)], der(device_leaf))
        mock_session.request.side_effect = make_router(routes)

        assert await portal.connect()

    async def test_https_device_with_foreign_certificate_fails(
        self, mock_session, device_root, foreign_certificate
    ):
        connection = ConnectionDescriptor("https://192.168.1.10")
        portal = PortalSession(connection, session=mock_session)
        routes = _routes(certificate=der(device_root[0]))
        attach_tls(routes[("GET", DEVICE_FAMILY_API)], der(foreign_certificate))
        mock_session.request.side_effect = make_router(routes)

        assert not await portal.connect()

        assert portal.connection_http_status is None
        assert "not trusted" in portal.connection_failed_description

    async def test_manual_certificate_installed(
        self, mock_session, portal, foreign_certificate
    ):
        mock_session.request.side_effect = make_router(_routes())

        assert await portal.connect(manual_certificate=der(foreign_certificate))

        assert portal.trust.manual_certificate == foreign_certificate

    async def test_removed_status_callback(self, mock_session, portal):
        mock_session.request.side_effect = make_router(_routes())
        callback = MagicMock()
        remove = portal.on_connection_status(callback)
        remove()
        remove()

        await portal.connect()

        callback.assert_not_called()


class TestPlatformGuards:
    """Tests for platform requirements."""

    def test_require_platform(self, portal):
        with pytest.raises(UnsupportedOperationError, match="Unknown"):
            portal.require_platform(DevicePlatform.XBOX_ONE)

    def test_require_hololens_message(self, portal):
        with pytest.raises(UnsupportedOperationError, match="HoloLens only"):
            portal.require_hololens("HoloLens only")


class TestSubscriptions:
    """Tests for WebSocket subscriptions through the session."""

    async def test_subscribe_once_per_path(self, portal):
        fake = FakeWebSocket()
        callback = MagicMock()

        with patch(
            "device_portal.ws_client.connect_websocket", return_value=fake
        ) as mock_connect:
            channel = await portal.subscribe(SYSTEM_PERF_API, callback)
            again = await portal.subscribe(SYSTEM_PERF_API, callback)

        assert channel is again
        assert channel.is_listening
        mock_connect.assert_called_once()
        assert str(mock_connect.call_args.args[0]).startswith(
            "ws://192.168.1.10:8080/api/resourcemanager/systemperf"
        )

        await portal.unsubscribe(SYSTEM_PERF_API)
        assert not channel.is_listening
        assert fake.close_calls == 1

    async def test_subscribe_after_server_close(self, portal):
        ended = FakeWebSocket(
            end=ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)
        )
        streaming = FakeWebSocket([['{"CpuLoad": 12}']])
        first = MagicMock()
        received = asyncio.Queue()

        with patch(
            "device_portal.ws_client.connect_websocket",
            side_effect=[ended, streaming],
        ) as mock_connect:
            channel = await portal.subscribe(SYSTEM_PERF_API, first)
            await asyncio.wait_for(channel._listen_task, 1)
            assert not channel.is_listening

            again = await portal.subscribe(
                SYSTEM_PERF_API,
                received.put_nowait,
                parse=lambda data: data["CpuLoad"],
            )

        assert again is not channel
        assert again.is_listening
        assert mock_connect.call_count == 2
        assert await asyncio.wait_for(received.get(), 1) == 12
        first.assert_not_called()

        await portal.unsubscribe(SYSTEM_PERF_API)
        assert streaming.close_calls == 1

    async def test_unsubscribe_unknown_path(self, portal):
        await portal.unsubscribe(SYSTEM_PERF_API)

    async def test_close_stops_channels(self, portal):
        fake = FakeWebSocket()

        with patch("device_portal.ws_client.connect_websocket", return_value=fake):
            channel = await portal.subscribe(SYSTEM_PERF_API, MagicMock())

        await portal.close()

        assert not channel.is_listening
        assert fake.close_calls == 1


async def test_session_close_shared_session(mock_session, portal):
    """A session passed in is left open."""
    mock_session.close = AsyncMock()
    assert portal.http is not None

    await portal.close()

    mock_session.close.assert_not_called()


async def test_session_close_owned_session(connection):
    """A session created on demand is closed."""
    with patch("device_portal.session.aiohttp.ClientSession") as mock_cls:
        mock_cls.return_value.close = AsyncMock()
        async with PortalSession(connection) as portal:
            assert portal.http is not None

    mock_cls.return_value.close.assert_awaited_once()
