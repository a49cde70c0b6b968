import asyncio
import os
import sys

import pytest

from setup_test import wait_until
from pyeasun.serialport import PySerialPort, VirtualSerialPort


def test_listeners_fire_in_registration_order():
    port = VirtualSerialPort()
    calls = []
    port.on("write", lambda data: calls.append(("first", data)))
    port.on("write", lambda data: calls.append(("second", data)))

    assert port.write(b"\x01\x03") is True
    assert calls == [("first", b"\x01\x03"), ("second", b"\x01\x03")]


def test_write_coerces_to_bytes():
    port = VirtualSerialPort()
    received = []
    port.on("write", received.append)

    port.write(bytearray(b"\x01\x02"))
    port.write(memoryview(b"\x03"))
    port.write("AB")

    assert received == [b"\x01\x02", b"\x03", b"AB"]
    assert all(isinstance(data, bytes) for data in received)


def test_any_event_name_is_accepted():
    port = VirtualSerialPort()
    calls = []
    port.on("lookup", lambda *args: calls.append(args))
    port.on("something-custom", lambda *args: calls.append(args))

    port.emit("lookup", None, "127.0.0.1", 4, "localhost")
    port.emit("something-custom")

    assert calls == [(None, "127.0.0.1", 4, "localhost"), ()]


def test_forward_data_fires_data_listeners():
    port = VirtualSerialPort()
    received = []
    port.on("data", received.append)

    port._forward_data(b"\xaa\xbb")

    assert received == [b"\xaa\xbb"]


def test_events_without_listeners_are_noops():
    port = VirtualSerialPort()
    port.open()

    assert port.write(b"\x01") is True
    port._forward_data(b"\x01")
    port.connect()
    port.end()
    port.close()
    assert port.emit("data", b"") is False


def test_open_close_bookkeeping():
    port = VirtualSerialPort()
    closes = []
    callbacks = []
    port.on("close", closes.append)

    port.open(callbacks.append)
    assert port.is_open is True
    port.close(callbacks.append)
    assert port.is_open is False
    port.close()

    assert callbacks == [None, None]
    assert closes == [False, False]


def test_end_and_connect_fire_lifecycle_listeners():
    port = VirtualSerialPort()
    calls = []
    port.on("close", lambda had_error: calls.append(("close", had_error)))
    port.on("connect", lambda: calls.append(("connect",)))

    port.connect()
    port.end()

    assert calls == [("connect",), ("close", False)]


def test_destroy_and_set_timeout():
    port = VirtualSerialPort()
    port.open()
    port.set_timeout(1500)
    port.destroy()

    assert port.timeout == 1500
    assert port.destroyed is True
    assert port.is_open is False


def test_failing_listener_does_not_stop_others():
    port = VirtualSerialPort()
    received = []

    def broken(_data):
        raise ValueError("broken listener")

    port.on("data", broken)
    port.on("data", received.append)

    port._forward_data(b"\x01")

    assert received == [b"\x01"]


def test_remove_all_listeners():
    port = VirtualSerialPort()
    received = []
    port.on("data", received.append)
    port.on("write", received.append)

    port.remove_all_listeners("data")
    port._forward_data(b"\x01")
    assert port.listener_count("data") == 0
    assert port.listener_count("write") == 1

    port.remove_all_listeners()
    port.write(b"\x02")
    assert received == []


@pytest.mark.skipif(sys.platform == "win32", reason="needs a pseudo-terminal")
def test_pyserial_port_on_pty():
    async def wrapper():
        master, slave = os.openpty()
        port = PySerialPort(os.ttyname(slave))
        received = []
        written = []
        closes = []
        port.on("data", received.append)
        port.on("write", written.append)
        port.on("close", closes.append)

        opened = []
        port.open(opened.append)
        assert opened == [None]
        assert port.is_open is True

        # Device to host
        os.write(master, b"\x01\x03\x02\x00\x2a")
        await wait_until(lambda: b"".join(received) == b"\x01\x03\x02\x00\x2a")

        # Host to device
        assert port.write(bytearray(b"\x01\x06\x00\x01")) is True
        assert written == [b"\x01\x06\x00\x01"]
        assert os.read(master, 16) == b"\x01\x06\x00\x01"

        fd = port.serial.fileno()
        port.close()
        assert port.is_open is False
        assert port.serial is None
        assert closes == [False]
        assert asyncio.get_running_loop().remove_reader(fd) is False
        assert port.write(b"\x00") is False

        os.close(master)
        os.close(slave)

    asyncio.run(wrapper())


def test_pyserial_port_open_failure():
    async def wrapper():
        port = PySerialPort("/dev/does-not-exist-pyeasun")
        errors = []
        port.on("error", errors.append)

        results = []
        port.open(results.append)
        assert port.is_open is False
        assert len(errors) == 1
        assert results == errors

        with pytest.raises(OSError):
            port.open()

    asyncio.run(wrapper())
