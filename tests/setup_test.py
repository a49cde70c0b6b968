import re
import struct
import socket
import asyncio
import logging

from umodbus.client.serial.redundancy_check import add_crc

from pyeasun.wifi import FRAME_PREFIX


log = logging.getLogger()

COMMAND_RE = re.compile(rb"^set>server=([\d.]+):(\d+);$")

# Requests for registers at or above this address get an
# ILLEGAL DATA ADDRESS exception response
EXCEPTION_ADDRESS = 0xFF00


def register_value(address: int) -> int:
    """Deterministic register content of the mock inverter"""
    return address & 0xFFFF


def function_response_from_request(req: bytes) -> bytes:
    """Build the Modbus RTU response of the mock inverter for **req**"""
    slave_addr = req[0:1]
    function_code = req[1]
    address, quantity_or_value = struct.unpack(">HH", req[2:6])
    if address >= EXCEPTION_ADDRESS:
        return add_crc(slave_addr + struct.pack(">BB", function_code | 0x80, 2))
    if function_code in (3, 4):
        values = [register_value(address + i) for i in range(quantity_or_value)]
        pdu = struct.pack(">BB", function_code, 2 * quantity_or_value)
        pdu += struct.pack(f">{quantity_or_value}H", *values)
        return add_crc(slave_addr + pdu)
    if function_code == 6:
        return bytes(req)
    if function_code == 16:
        return add_crc(slave_addr + struct.pack(">BHH", 16, address, quantity_or_value))
    return add_crc(slave_addr + struct.pack(">BB", function_code | 0x80, 1))


class FakeWriter:
    """Stands in for asyncio.StreamWriter, records everything written"""

    def __init__(self, peer=("127.0.0.1", 40000)):
        self.peer = peer
        self.frames = []
        self.late_writes = []
        self.closed = False

    def write(self, data):
        if self.closed:
            self.late_writes.append(bytes(data))
        else:
            self.frames.append(bytes(data))

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return self.peer
        return default


class CommandSink(asyncio.DatagramProtocol):
    """UDP receiver collecting the configuration commands of the bridge"""

    def __init__(self):
        self.commands = []

    def datagram_received(self, data, addr):
        self.commands.append(data)


async def start_command_sink():
    loop = asyncio.get_running_loop()
    transport, sink = await loop.create_datagram_endpoint(
        CommandSink, local_addr=("127.0.0.1", 0), family=socket.AF_INET
    )
    return transport, sink, transport.get_extra_info("sockname")[1]


async def wait_until(predicate, timeout=3.0):
    """Poll **predicate** until it holds, fail the test after **timeout**"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class MockWifiModule(asyncio.DatagramProtocol):
    """
    Mock WiFi module of the inverter

    Listens for ``set>server=<ip>:<port>;`` on UDP, dials back over TCP and
    answers tunneled Modbus RTU requests.
    """

    def __init__(self, split_responses=False, ignore_commands=False):
        self.split_responses = split_responses
        self.ignore_commands = ignore_commands
        self.commands = []
        self.connections = 0
        self.counters = []
        self.requests = []
        self.writer: asyncio.StreamWriter = None
        self.transport: asyncio.DatagramTransport = None
        self.port = None
        self._tasks = set()

    async def start(self):
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: self, local_addr=("127.0.0.1", 0), family=socket.AF_INET
        )
        self.port = self.transport.get_extra_info("sockname")[1]
        return self

    def datagram_received(self, data, addr):
        log.debug(f"[MockWifi] UDP RECD: {data}")
        self.commands.append(data)
        match = COMMAND_RE.match(data)
        if match is None or self.ignore_commands:
            return
        host, port = match.group(1).decode(), int(match.group(2))
        task = asyncio.get_running_loop().create_task(self._dial(host, port))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dial(self, host, port):
        reader, writer = await asyncio.open_connection(host, port)
        self.writer = writer
        self.connections += 1
        counters = []
        self.counters.append(counters)
        while True:
            data = await reader.read(1024)
            if data == b"":
                break
            log.debug(f'[MockWifi] TCP RECD: {data.hex(" ")}')
            if data[2:8] != FRAME_PREFIX:
                # keep-alive probe
                continue
            (counter,) = struct.unpack(">H", data[0:2])
            counters.append(counter)
            request = data[8:]
            self.requests.append(request)
            response = function_response_from_request(request)
            header = struct.pack(">H", counter)
            if self.split_responses:
                writer.write(header + response[:3])
                await writer.drain()
                await asyncio.sleep(0.05)
                writer.write(header + response[3:])
            else:
                writer.write(header + response)
            await writer.drain()
        writer.close()

    async def drop(self):
        """Close the TCP connection, as the module does when idle"""
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError:
                pass

    async def stop(self):
        await self.drop()
        for task in list(self._tasks):
            task.cancel()
        if self.transport is not None:
            self.transport.close()
