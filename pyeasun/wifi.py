"""wifi.py"""

import enum
import socket
import struct
import asyncio
import logging

from typing import Callable, Optional

from .serialport import SerialEndpoint


PORT_LOCAL = 8899
PORT_WIFI = 58899
CONNECT_TIMEOUT = 5
KEEPALIVE_INTERVAL = 30

# The counter is reset before 0xFFFF to leave some headroom.
COUNTER_HIGH_WATER = 0xFFF0

FRAME_PREFIX = bytes.fromhex("0001000aff04")

# Requests the WiFi module ID. Only used to keep the connection open.
KEEPALIVE_PROBE = bytes.fromhex("00000001000aff01160b0a16102d012c")


class NoSocketAvailableError(Exception):
    """No Socket Available Error"""


class DiscoveryTimeoutError(TimeoutError):
    """WiFi module did not connect back in time"""


class BridgeBusyError(Exception):
    """Bridge already has a session or a discovery in flight"""


class BridgeState(enum.Enum):
    """WiFi bridge connection state"""

    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTED = "connected"


def encode_frame(counter: int, payload: bytes) -> bytes:
    """
    Wrap a Modbus RTU frame for the WiFi module

    :param counter: Frame counter, 1 to :data:`COUNTER_HIGH_WATER`
    :type counter: int
    :param payload: Modbus RTU frame
    :type payload: bytes
    :return: ``[counter u16 BE][FRAME_PREFIX][payload]``
    :rtype: bytes

    """
    return struct.pack(">H", counter) + FRAME_PREFIX + bytes(payload)


def decode_frame(chunk: bytes) -> Optional[tuple[int, bytes]]:
    """
    Split a chunk received from the WiFi module into counter and payload

    :param chunk: Bytes read from the TCP session
    :type chunk: bytes
    :return: (counter, payload), or None if the chunk is too short
    :rtype: tuple[int, bytes]

    """
    if len(chunk) < 2:
        return None
    (counter,) = struct.unpack(">H", chunk[0:2])
    return counter, bytes(chunk[2:])


class BridgeSession:
    """
    One TCP connection opened by the WiFi module

    Owns the stream reader/writer, the keep-alive task and the frame counter.

    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Constructor"""
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")
        self.counter = 1
        self.reader_task: asyncio.Task = None  # noqa
        self.keepalive_task: asyncio.Task = None  # noqa

    def next_counter(self) -> int:
        """
        Allocate the counter of the next outbound frame

        :return: Frame counter, never 0
        :rtype: int

        """
        counter = self.counter
        if self.counter >= COUNTER_HIGH_WATER:
            self.counter = 1
        else:
            self.counter += 1
        return counter

    def is_closing(self) -> bool:
        """True once the TCP writer is closed or closing"""
        return self.writer.is_closing()

    def close(self) -> None:
        """Cancel the keep-alive task and close the writer"""
        if self.keepalive_task is not None:
            self.keepalive_task.cancel()
        self.counter = 1
        if not self.writer.is_closing():
            self.writer.close()


class _ConfigProtocol(asyncio.DatagramProtocol):
    """UDP endpoint used to send configuration commands to the WiFi module"""

    def __init__(self, log: logging.Logger, on_error: Callable = None):
        self.log = log
        self.on_error = on_error

    def connection_made(self, transport: asyncio.DatagramTransport):
        address = transport.get_extra_info("sockname")
        self.log.debug("[UDP][LISTENING] on %s", address)

    def datagram_received(self, data: bytes, addr: tuple[str, int]):
        self.log.debug("[UDP][DATA] %s:%s - %s", addr[0], addr[1], data)

    def error_received(self, exc: OSError):
        self.log.debug("[UDP][ERROR] %r", exc)
        if self.on_error is not None:
            self.on_error(exc)

    def connection_lost(self, exc: Optional[Exception]):
        self.log.debug("[UDP] Connection closed")


# pylint: disable-next=too-many-instance-attributes (R0902)
class WifiBridge:
    """
    Tunnels the Modbus RTU traffic of a serial endpoint through the WiFi module

    The WiFi module does not listen for Modbus clients. It is told over UDP
    to open a TCP connection back to us (``set>server=<ip>:<port>;``), after
    which every RTU frame travels prefixed with a 2-byte frame counter.
    Writes on **endpoint** are framed and sent to the module, and frames
    received from the module are stripped and replayed as ``data`` events on
    **endpoint**. When the module closes the connection, discovery is
    restarted in the background.

    :param endpoint: Serial endpoint the Modbus client writes to
    :type endpoint: VirtualSerialPort
    :param wifi_ip: IP address of the WiFi module
    :type wifi_ip: str
    :param local_ip: Local IP address the WiFi module should connect to
    :type local_ip: str
    :param local_port: Local TCP port to listen on, defaults to 8899. Use 0
        for an ephemeral port.
    :type local_port: int, optional
    :param wifi_port: UDP port of the WiFi module, defaults to 58899
    :type wifi_port: int, optional
    :param connect_timeout: Seconds to wait for the module to connect back,
        defaults to 5
    :type connect_timeout: float, optional
    :param keepalive_interval: Seconds between keep-alive probes, defaults
        to 30
    :type keepalive_interval: float, optional
    :param on_status_change: Called with the new :class:`BridgeState` on
        every state change
    :type on_status_change: Callable, optional
    :param logger: Python logging facility
    :type logger: Logger, optional

    Basic example:
       >>> port = VirtualSerialPort()
       >>> bridge = WifiBridge(port, "192.168.1.50", "192.168.1.10")
       >>> await bridge.connect()

    """

    def __init__(self, endpoint: SerialEndpoint, wifi_ip, local_ip, **kwargs):
        """Constructor"""

        self.log = kwargs.get("logger", None)
        if self.log is None:
            logging.basicConfig()
            self.log = logging.getLogger(__name__)

        self.endpoint = endpoint
        self.wifi_ip = wifi_ip
        self.local_ip = local_ip

        self.local_port = kwargs.get("local_port", PORT_LOCAL)
        self.wifi_port = kwargs.get("wifi_port", PORT_WIFI)
        self.connect_timeout = kwargs.get("connect_timeout", CONNECT_TIMEOUT)
        self.keepalive_interval = kwargs.get("keepalive_interval", KEEPALIVE_INTERVAL)
        self.on_status_change: Callable = kwargs.get("on_status_change", None)

        self.state = BridgeState.IDLE
        self.session: BridgeSession = None  # noqa
        self._server: asyncio.AbstractServer = None  # noqa
        self._udp_transport: asyncio.DatagramTransport = None  # noqa
        self._wait_timer: asyncio.TimerHandle = None  # noqa
        self._pending: asyncio.Future = None  # noqa
        self._closing = False

        self.endpoint.on("write", self._handle_outbound)

    @property
    def is_connected(self) -> bool:
        """True while a TCP session with the WiFi module is open"""
        return self.session is not None and not self.session.is_closing()

    def _set_state(self, state: BridgeState) -> None:
        if state is self.state:
            return
        self.log.info("[WIFI] %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_status_change is not None:
            try:
                self.on_status_change(state)
            except Exception:  # pylint: disable=broad-exception-caught
                self.log.exception("[WIFI] Status change callback failed")

    async def connect(self) -> None:
        """
        Start the TCP listener, send the UDP configuration command and wait
        for the WiFi module to connect back

        :return: None
        :raises BridgeBusyError: If a session or a discovery is in flight
        :raises DiscoveryTimeoutError: If the module does not connect in time
        :raises NoSocketAvailableError: If the UDP command cannot be sent
        :raises OSError: If the TCP listener cannot be bound

        """
        if self.session is not None or self.state is not BridgeState.IDLE:
            raise BridgeBusyError(f"Bridge to {self.wifi_ip} is {self.state.value}")

        loop = asyncio.get_running_loop()
        if self._server is None:
            self._server = await asyncio.start_server(
                self._on_client, host=self.local_ip, port=self.local_port
            )
            self.local_port = self._server.sockets[0].getsockname()[1]
            self.log.info("[TCP] Server started on %s:%s", self.local_ip, self.local_port)
        if self._udp_transport is None or self._udp_transport.is_closing():
            self._udp_transport, _ = await loop.create_datagram_endpoint(
                lambda: _ConfigProtocol(self.log, self._on_udp_error),
                family=socket.AF_INET,
                allow_broadcast=True,
            )

        pending = self._pending = loop.create_future()
        self._start_discovery()
        try:
            await pending
        finally:
            self._pending = None
            if pending.cancelled() and self.state is BridgeState.DISCOVERING:
                self.log.info("[WIFI] Discovery of %s cancelled", self.wifi_ip)
                self._cancel_wait_timer()
                self._set_state(BridgeState.IDLE)

    async def disconnect(self) -> None:
        """
        Close the session, the TCP listener and the UDP socket. No reconnect
        is attempted afterwards.

        :return: None

        """
        self._closing = True
        try:
            self._cancel_wait_timer()
            if self._pending is not None and not self._pending.done():
                self._pending.set_exception(
                    NoSocketAvailableError("Bridge disconnected")
                )
            session = self.session
            self.session = None
            if session is not None:
                session.close()
                if session.reader_task is not None:
                    session.reader_task.cancel()
                try:
                    await session.writer.wait_closed()
                except OSError as e:
                    self.log.debug(f"{e} can be during closing ignored.")
            if self._server is not None:
                self._server.close()
                await self._server.wait_closed()
                self._server = None
            if self._udp_transport is not None:
                self._udp_transport.close()
                self._udp_transport = None
            self._set_state(BridgeState.IDLE)
        finally:
            self._closing = False

    def _start_discovery(self) -> None:
        self._set_state(BridgeState.DISCOVERING)
        self._send_configure_command()

    def _send_configure_command(self) -> None:
        """Send ``set>server=<ip>:<port>;`` and arm the discovery timeout"""
        self._cancel_wait_timer()
        if self._closing or self.state is not BridgeState.DISCOVERING:
            return
        command = f"set>server={self.local_ip}:{self.local_port};"
        loop = asyncio.get_running_loop()
        self._wait_timer = loop.call_later(
            self.connect_timeout, self._on_discovery_timeout
        )
        try:
            self._send_udp(command.encode("ascii"))
        except (NoSocketAvailableError, OSError) as exc:
            self._on_udp_error(exc)

    def _on_udp_error(self, exc: Exception) -> None:
        """
        Fail the pending :func:`connect()` with **exc**, or schedule another
        attempt while rediscovering in the background

        Called for errors raised by ``sendto`` as well as for the ones the
        datagram transport reports through ``error_received``.
        """
        if self._closing or self.state is not BridgeState.DISCOVERING:
            return
        self.log.error("[UDP][SEND ERROR] %s", exc)
        self._cancel_wait_timer()
        if self._pending is not None and not self._pending.done():
            self._set_state(BridgeState.IDLE)
            self._pending.set_exception(exc)
        else:
            # Background rediscovery keeps trying.
            self._wait_timer = asyncio.get_running_loop().call_later(
                self.connect_timeout, self._send_configure_command
            )

    def _send_udp(self, data: bytes) -> None:
        self.log.debug("[UDP] SENT: %s to %s:%s", data, self.wifi_ip, self.wifi_port)
        if self._udp_transport is None or self._udp_transport.is_closing():
            raise NoSocketAvailableError("No valid UDP socket")
        self._udp_transport.sendto(data, (self.wifi_ip, self.wifi_port))

    def _cancel_wait_timer(self) -> None:
        if self._wait_timer is not None:
            self._wait_timer.cancel()
            self._wait_timer = None

    def _on_discovery_timeout(self) -> None:
        self._wait_timer = None
        if self.state is not BridgeState.DISCOVERING:
            return
        if self._pending is not None and not self._pending.done():
            self.log.warning(
                "[WIFI] %s did not connect within %ss", self.wifi_ip, self.connect_timeout
            )
            self._set_state(BridgeState.IDLE)
            self._pending.set_exception(
                DiscoveryTimeoutError("Timeout while waiting for WiFi device to connect")
            )
        else:
            self.log.warning(
                "[WIFI] %s did not reconnect within %ss. Retrying",
                self.wifi_ip,
                self.connect_timeout,
            )
            self._send_configure_command()

    async def _on_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """TCP server callback, runs for the lifetime of the connection"""
        peer = writer.get_extra_info("peername")
        if self.session is not None or self.state is not BridgeState.DISCOVERING:
            self.log.warning("[TCP][CLIENT] %s rejected, not discovering", peer)
            writer.close()
            return

        self._cancel_wait_timer()
        session = BridgeSession(reader, writer)
        session.reader_task = asyncio.current_task()
        self.session = session
        self.log.info("[TCP][CLIENT] %s Connected", peer)

        loop = asyncio.get_running_loop()
        session.keepalive_task = loop.create_task(self._keepalive(session))
        self._set_state(BridgeState.CONNECTED)
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(None)

        await self._session_reader(session)

    async def _session_reader(self, session: BridgeSession) -> None:
        while True:
            try:
                data = await session.reader.read(1024)
            except OSError:
                self.log.debug(
                    "[TCP][ERROR] Connection %s", session.peer, exc_info=True
                )
                break
            if data == b"":
                break
            self._handle_inbound(data)
        self._session_closed(session)

    def _session_closed(self, session: BridgeSession) -> None:
        if self.session is not session:
            return
        self.log.info("[TCP][CLOSE] Connection %s", session.peer)
        session.close()
        self.session = None
        if self._closing:
            return
        self._start_discovery()

    async def _keepalive(self, session: BridgeSession) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            if session.is_closing():
                return
            self.log.debug("[TCP][KEEPALIVE] %s", KEEPALIVE_PROBE.hex(" "))
            try:
                session.writer.write(KEEPALIVE_PROBE)
                await session.writer.drain()
            except (OSError, RuntimeError) as exc:
                self.log.error("[TCP][KEEPALIVE][ERROR] %s", exc)

    def _handle_outbound(self, data: bytes) -> None:
        """``write`` listener: frame and send a Modbus RTU frame"""
        session = self.session
        if session is None or session.is_closing():
            self.log.warning("[WIFI-WRITE] No session. Dropped: %s", data.hex(" "))
            return
        frame = encode_frame(session.next_counter(), data)
        self.log.debug("[WIFI-WRITE] %s", frame.hex(" "))
        try:
            session.writer.write(frame)
        except (OSError, RuntimeError) as exc:
            self.log.error("[WIFI-WRITE][ERROR] %s", exc)

    def _handle_inbound(self, data: bytes) -> None:
        """Forward the payload of a frame received from the WiFi module"""
        self.log.debug("[TCP][DATA] %s", data.hex(" "))
        frame = decode_frame(data)
        if frame is None:
            self.log.debug("[TCP][DATA] Short frame discarded")
            return
        counter, payload = frame
        if counter == 0:
            self.log.debug("[TCP][DATA] Control frame discarded")
            return
        self.endpoint._forward_data(payload)  # pylint: disable=protected-access
