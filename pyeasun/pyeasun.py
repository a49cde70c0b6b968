"""pyeasun.py"""

import asyncio
import logging

from umodbus.client.serial import rtu
from umodbus.exceptions import error_code_to_exception_map
from umodbus.functions import create_function_from_request_pdu

from .registers import (
    RegisterConfig,
    decode_number,
    decode_string,
    format_number,
)
from .serialport import PySerialPort, SerialEndpoint, VirtualSerialPort
from .wifi import WifiBridge


# Minimum delay between two Modbus operations, in seconds
MIN_WAIT = 0.1

_EXCEPTION_ADU_SIZE = 5

_BRIDGE_OPTIONS = (
    "local_port",
    "wifi_port",
    "connect_timeout",
    "keepalive_interval",
    "on_status_change",
)


class NotConnectedError(Exception):
    """No endpoint attached"""


class ModbusResponseError(Exception):
    """Unknown Modbus exception code in response"""


# pylint: disable-next=too-many-instance-attributes (R0902)
class PyEasunAsync:
    """
    The PyEasunAsync class talks Modbus RTU to an EASUN inverter through a
    serial endpoint: either the WiFi module (:func:`connect_wifi_device()
    <pyeasun.PyEasunAsync.connect_wifi_device>`) or a serial port
    (:func:`connect_serial() <pyeasun.PyEasunAsync.connect_serial>`).

    Requests are serialized; only one Modbus transaction is in flight at a
    time and consecutive operations are spaced by at least ``min_wait``.

    :param mb_slave_id: Inverter Modbus slave ID, defaults to 1
    :type mb_slave_id: int, optional
    :param socket_timeout: Response timeout in seconds, defaults to 5
    :type socket_timeout: int, optional
    :param min_wait: Minimum delay between operations in seconds, defaults
        to 0.1
    :type min_wait: float, optional
    :param logger: Python logging facility
    :type logger: Logger, optional
    :param verbose: Enable verbose logging, defaults to False
    :type verbose: bool, optional

    Remaining keyword arguments (``local_port``, ``wifi_port``,
    ``connect_timeout``, ``keepalive_interval``, ``on_status_change``) are
    passed to :class:`WifiBridge <pyeasun.wifi.WifiBridge>`.

    Basic example:
       >>> import asyncio
       >>> from pyeasun import PyEasunAsync, REGISTERS
       >>> easun = PyEasunAsync()
       >>> async def main():
       ...     await easun.connect_wifi_device("192.168.1.50", "192.168.1.10")
       ...     print(await easun.read_formatted(REGISTERS["BatteryVoltage"]))
       >>> asyncio.run(main())

    See :doc:`examples` directory for further examples.

    """

    def __init__(self, **kwargs):
        """Constructor"""

        self.log = kwargs.get("logger", None)
        if self.log is None:
            logging.basicConfig()
            self.log = logging.getLogger(__name__)

        self.mb_slave_id = kwargs.get("mb_slave_id", 1)
        self.verbose = kwargs.get("verbose", False)
        self.socket_timeout = kwargs.get("socket_timeout", 5)
        self.min_wait = kwargs.get("min_wait", MIN_WAIT)
        self.bridge_options = {
            name: kwargs[name] for name in _BRIDGE_OPTIONS if name in kwargs
        }

        if self.verbose:
            self.log.setLevel("DEBUG")

        self.endpoint: SerialEndpoint = None  # noqa
        self.bridge: WifiBridge = None  # noqa
        self._lock = asyncio.Lock()
        self._last_op = 0.0
        self._rx_buffer = bytearray()
        self._rx_expected = 0
        self._rx_future: asyncio.Future = None  # noqa

    @property
    def timeout(self):
        return self.socket_timeout

    @timeout.setter
    def timeout(self, value):
        self.socket_timeout = value

    def attach(self, endpoint: SerialEndpoint) -> None:
        """
        Use **endpoint** for all further requests

        :param endpoint: Serial endpoint
        :type endpoint: SerialEndpoint
        :return: None

        """
        self.endpoint = endpoint
        endpoint.on("data", self._on_data)
        if not endpoint.is_open:
            endpoint.open()

    async def connect_wifi_device(self, wifi_ip, local_ip) -> None:
        """
        Connect through the WiFi module of the inverter

        :param wifi_ip: IP address of the WiFi module
        :type wifi_ip: str
        :param local_ip: Local IP address the WiFi module connects back to
        :type local_ip: str
        :return: None
        :raises DiscoveryTimeoutError: If the WiFi module does not connect back
        :raises NoSocketAvailableError: If the UDP command cannot be sent
        :raises OSError: If the listener cannot be bound or the command fails

        """
        endpoint = VirtualSerialPort(logger=self.log)
        bridge = WifiBridge(endpoint, wifi_ip, local_ip, logger=self.log, **self.bridge_options)
        try:
            await bridge.connect()
        except (Exception, asyncio.CancelledError):
            await bridge.disconnect()
            raise
        self.bridge = bridge
        self.attach(endpoint)

    async def connect_serial(self, port, **serial_options) -> None:
        """
        Connect through a serial port (RS485 adapter)

        :param port: Serial device, e.g. ``/dev/ttyUSB0``
        :type port: str
        :return: None

        """
        self.attach(PySerialPort(port, serial_options=serial_options, logger=self.log))

    def on_disconnect(self, callback) -> None:
        """Call **callback** when the endpoint closes"""
        if self.endpoint is None:
            raise NotConnectedError("Not connected")
        self.endpoint.on("close", callback)

    async def disconnect(self) -> None:
        """
        Stop the WiFi bridge (if any) and close the endpoint

        :return: None

        """
        if self.bridge is not None:
            await self.bridge.disconnect()
            self.bridge = None
        if self.endpoint is not None:
            self.endpoint.close()
            self.endpoint.remove_all_listeners()
            self.endpoint = None

    @staticmethod
    def _expected_response_length(mb_request_frame: bytes) -> int:
        try:
            function = create_function_from_request_pdu(mb_request_frame[1:-2])
        except Exception:  # pylint: disable=broad-exception-caught
            return _EXCEPTION_ADU_SIZE
        return function.expected_response_pdu_size + 3

    def _on_data(self, data: bytes) -> None:
        """``data`` listener, completes the pending response"""
        if self._rx_future is None or self._rx_future.done():
            self.log.debug("Data received but nobody waits for it... Discarded")
            return
        self._rx_buffer += data
        expected = self._rx_expected
        if len(self._rx_buffer) >= 2 and self._rx_buffer[1] & 0x80:
            expected = _EXCEPTION_ADU_SIZE
        if len(self._rx_buffer) >= expected:
            self._rx_future.set_result(bytes(self._rx_buffer[:expected]))

    async def _wait_min_gap(self, loop: asyncio.AbstractEventLoop) -> None:
        since_last = loop.time() - self._last_op
        if since_last < self.min_wait:
            await asyncio.sleep(self.min_wait - since_last)

    async def _send_receive_frame(self, mb_request_frame: bytes) -> bytes:
        """
        Write a Modbus RTU frame to the endpoint and wait for the response

        :param mb_request_frame: Modbus RTU frame to transmit
        :type mb_request_frame: bytes
        :return: Modbus RTU frame received
        :rtype: bytes
        :raises NotConnectedError: If no endpoint is attached
        :raises TimeoutError: If no complete response arrives in time

        """
        if self.endpoint is None or not self.endpoint.is_open:
            raise NotConnectedError("Not connected")

        async with self._lock:
            loop = asyncio.get_running_loop()
            await self._wait_min_gap(loop)
            self._rx_buffer = bytearray()
            self._rx_expected = self._expected_response_length(mb_request_frame)
            self._rx_future = loop.create_future()
            self.log.debug("[%s] SENT: %s", self.mb_slave_id, mb_request_frame.hex(" "))
            try:
                self.endpoint.write(mb_request_frame)
                response = await asyncio.wait_for(self._rx_future, self.socket_timeout)
            except asyncio.TimeoutError as exc:
                self.log.debug(
                    "[%s] No response. Partial: %s",
                    self.mb_slave_id,
                    self._rx_buffer.hex(" "),
                )
                raise TimeoutError(
                    f"No response within {self.socket_timeout}s"
                ) from exc
            finally:
                self._rx_future = None
                self._last_op = loop.time()

        self.log.debug("[%s] RECD: %s", self.mb_slave_id, response.hex(" "))
        return response

    async def _get_modbus_response(self, mb_request_frame):
        """Returns mb response values for a given mb_request_frame

        :param mb_request_frame: Modbus RTU frame to parse
        :type mb_request_frame: bytes
        :return: Modbus RTU decoded values
        :rtype: list[int]

        """
        mb_response_frame = await self._send_receive_frame(mb_request_frame)
        if mb_response_frame[1] & 0x80:
            err = error_code_to_exception_map.get(mb_response_frame[2])
            if err is not None:
                raise err()
            raise ModbusResponseError(
                f"Modbus exception code {mb_response_frame[2]:#04x}"
            )
        return rtu.parse_response_adu(mb_response_frame, mb_request_frame)

    async def read_holding_registers(self, register_addr, quantity):
        """Read holding registers from modbus slave (Modbus function code 3)

        :param register_addr: Modbus register start address
        :type register_addr: int
        :param quantity: Number of registers to query
        :type quantity: int

        :return: List containing register values
        :rtype: list[int]

        """
        mb_request_frame = rtu.read_holding_registers(
            self.mb_slave_id, register_addr, quantity
        )
        modbus_values = await self._get_modbus_response(mb_request_frame)
        return modbus_values

    async def read_input_registers(self, register_addr, quantity):
        """Read input registers from modbus slave (Modbus function code 4)

        :param register_addr: Modbus register start address
        :type register_addr: int
        :param quantity: Number of registers to query
        :type quantity: int

        :return: List containing register values
        :rtype: list[int]

        """
        mb_request_frame = rtu.read_input_registers(
            self.mb_slave_id, register_addr, quantity
        )
        modbus_values = await self._get_modbus_response(mb_request_frame)
        return modbus_values

    async def write_holding_register(self, register_addr, value):
        """Write a single holding register to modbus slave (Modbus function code 6)

        :param register_addr: Modbus register address
        :type register_addr: int
        :param value: value to write
        :type value: int
        :return: value written
        :rtype: int

        """
        mb_request_frame = rtu.write_single_register(
            self.mb_slave_id, register_addr, value
        )
        value = await self._get_modbus_response(mb_request_frame)
        return value

    async def write_multiple_holding_registers(self, register_addr, values):
        """Write list of multiple values to series of holding registers on modbus slave (Modbus function code 16)

        :param register_addr: Modbus register start address
        :type register_addr: int
        :param values: values to write
        :type values: list[int]
        :return: values written
        :rtype: list[int]

        """
        mb_request_frame = rtu.write_multiple_registers(
            self.mb_slave_id, register_addr, values
        )
        modbus_values = await self._get_modbus_response(mb_request_frame)
        return modbus_values

    async def read_number(self, reg: RegisterConfig):
        """
        Read a register and scale it with its ``rate``

        :param reg: Register description
        :type reg: RegisterConfig
        :return: Scaled value
        :rtype: int | float

        """
        values = await self.read_holding_registers(reg.address, reg.length)
        return decode_number(values, reg)

    async def read_string(self, reg: RegisterConfig) -> str:
        values = await self.read_holding_registers(reg.address, reg.length)
        return decode_string(values)

    async def read_formatted(self, reg: RegisterConfig) -> str:
        """Read a register and format it with unit and selection name"""
        if reg.format == "%s":
            return await self.read_string(reg)
        return format_number(await self.read_number(reg), reg)

    async def write_number(self, reg: RegisterConfig, value):
        """
        Scale **value** back to a raw register value and write it

        :param reg: Register description
        :type reg: RegisterConfig
        :param value: Value in the register's unit
        :type value: int | float
        :return: Value written, in the register's unit
        :rtype: int | float

        """
        raw = round(value / reg.rate)
        written = await self.write_holding_register(reg.address, raw)
        if reg.rate == 1:
            return written
        return written / (1 / reg.rate)

    async def send_raw_modbus_frame(self, mb_request_frame):
        """Send raw modbus frame and return modbus response frame

        :param mb_request_frame: Modbus frame
        :type mb_request_frame: bytearray
        :return: Modbus frame
        :rtype: bytearray

        """
        return await self._send_receive_frame(bytes(mb_request_frame))
