"""serialport.py"""

import asyncio
import logging

from typing import Any, Callable

import serial


DEFAULT_SERIAL_OPTIONS = {
    "baudrate": 9600,
    "bytesize": serial.EIGHTBITS,
    "parity": serial.PARITY_NONE,
    "stopbits": serial.STOPBITS_ONE,
    "xonxoff": False,
    "rtscts": False,
}


def _to_bytes(data: Any) -> bytes:
    if isinstance(data, str):
        return data.encode("latin-1")
    return bytes(data)


class SerialEndpoint:
    """
    Minimal event driven serial port contract consumed by the Modbus client

    Listeners are kept per event name in registration order. Any event name
    is accepted (``data``, ``write``, ``close``, ``connect``, ``error``,
    ``drain``, ``end``, ``timeout``, ``lookup``, ``ready``, ...).

    :param logger: Python logging facility
    :type logger: Logger, optional

    """

    def __init__(self, **kwargs):
        """Constructor"""
        self.log = kwargs.get("logger", None)
        if self.log is None:
            self.log = logging.getLogger(__name__)

        self.is_open = False
        self.destroyed = False
        self.timeout = None
        self._listeners: dict[str, list[Callable[..., Any]]] = {}

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """
        Register a listener for an event

        :param event: Event name
        :type event: str
        :param listener: Callable invoked every time the event fires
        :type listener: Callable
        :return: None

        """
        self.log.debug("[ON] %s", event)
        self._listeners.setdefault(event, []).append(listener)

    def remove_all_listeners(self, event: str = None) -> None:
        """
        Drop the listeners of one event, or of all events if **event** is None

        :param event: Event name, optional
        :type event: str
        :return: None

        """
        if event is None:
            self._listeners = {}
        else:
            self._listeners[event] = []

    def listener_count(self, event: str) -> int:
        """Number of listeners registered for **event**"""
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args) -> bool:
        """
        Fire all listeners of **event** with **args**

        Firing an event nobody listens to is a no-op. A failing listener is
        logged and the remaining listeners still run.

        :param event: Event name
        :type event: str
        :return: True if at least one listener was invoked
        :rtype: bool

        """
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:  # pylint: disable=broad-exception-caught
                self.log.exception("[%s] Listener %r failed", event, listener)
        return len(listeners) > 0

    def open(self, callback: Callable = None) -> None:
        raise NotImplementedError

    def close(self, callback: Callable = None) -> None:
        raise NotImplementedError

    def write(self, data) -> bool:
        raise NotImplementedError

    def end(self) -> None:
        self.log.debug("[END]")
        self.emit("close", False)

    def connect(self) -> None:
        self.log.debug("[CONNECT]")
        self.emit("connect")

    def destroy(self) -> None:
        self.log.debug("[DESTROY]")
        self.destroyed = True
        self.is_open = False

    def set_timeout(self, timeout) -> None:
        self.log.debug("[SET_TIMEOUT] %s", timeout)
        self.timeout = timeout


class VirtualSerialPort(SerialEndpoint):
    """
    In-memory serial port backed by nothing but callback dispatch

    Writes are handed to the ``write`` listeners (this is where a transport
    intercepts outbound Modbus traffic) and :func:`_forward_data()
    <pyeasun.serialport.VirtualSerialPort._forward_data>` replays inbound
    bytes to the ``data`` listeners.

    Basic example:
       >>> port = VirtualSerialPort()
       >>> port.on("write", lambda data: print(data.hex(" ")))
       >>> port.write(b"\\x01\\x03")
       01 03

    """

    def open(self, callback: Callable = None) -> None:
        self.log.debug("[OPEN]")
        self.is_open = True
        self.destroyed = False
        if callback:
            callback(None)

    def close(self, callback: Callable = None) -> None:
        """Mark the port closed and fire the ``close`` listeners with ``False``"""
        self.log.debug("[CLOSE]")
        self.is_open = False
        self.emit("close", False)
        if callback:
            callback(None)

    def write(self, data) -> bool:
        """
        Fire the ``write`` listeners with **data**

        :param data: Bytes submitted by the upper layer
        :type data: bytes
        :return: Always True
        :rtype: bool

        """
        data = _to_bytes(data)
        self.log.debug("[WRITE] %s", data.hex(" "))
        self.emit("write", data)
        return True

    def _forward_data(self, data: bytes) -> None:
        """
        Fire the ``data`` listeners with bytes received by the transport

        :param data: Inbound bytes
        :type data: bytes
        :return: None

        """
        self.log.debug("[FORWARD_DATA] %s", bytes(data).hex(" "))
        self.emit("data", bytes(data))


class PySerialPort(SerialEndpoint):
    """
    Serial endpoint backed by a real serial device through pyserial

    The port is opened non-blocking and its file descriptor is watched by the
    running asyncio loop, so received bytes are fired as ``data`` events.
    Only available on platforms where ``loop.add_reader`` accepts serial
    file descriptors (Linux, macOS).

    :param port: Serial device, e.g. ``/dev/ttyUSB0``
    :type port: str
    :param serial_options: Overrides for :data:`DEFAULT_SERIAL_OPTIONS`
    :type serial_options: dict, optional
    :param logger: Python logging facility
    :type logger: Logger, optional

    """

    def __init__(self, port: str, **kwargs):
        """Constructor"""
        super().__init__(**kwargs)
        self.port = port
        self.serial_options = {
            **DEFAULT_SERIAL_OPTIONS,
            **kwargs.get("serial_options", {}),
        }
        self.serial: serial.Serial = None  # noqa
        self._loop: asyncio.AbstractEventLoop = None  # noqa

    def open(self, callback: Callable = None) -> None:
        error = None
        try:
            self.serial = serial.Serial(self.port, timeout=0, **self.serial_options)
            self._loop = asyncio.get_running_loop()
            self._loop.add_reader(self.serial.fileno(), self._on_readable)
            self.is_open = True
            self.log.debug("[OPEN] %s %s", self.port, self.serial_options)
        except (serial.SerialException, OSError) as exc:
            self.log.debug("[OPEN] %s failed", self.port, exc_info=True)
            error = exc
            self.emit("error", exc)
        if callback:
            callback(error)
        elif error is not None:
            raise error

    def _on_readable(self) -> None:
        try:
            data = self.serial.read(self.serial.in_waiting or 1)
        except serial.SerialException as exc:
            self.log.debug("[READ] %s failed", self.port, exc_info=True)
            self.emit("error", exc)
            self.close()
            return
        if data:
            self.emit("data", data)

    def write(self, data) -> bool:
        data = _to_bytes(data)
        self.log.debug("[WRITE] %s", data.hex(" "))
        if self.serial is None or not self.is_open:
            self.log.warning("[WRITE] %s is not open", self.port)
            return False
        try:
            self.serial.write(data)
        except serial.SerialException as exc:
            self.log.error("[WRITE] %s failed: %s", self.port, exc)
            self.emit("error", exc)
            return False
        self.emit("write", data)
        return True

    def close(self, callback: Callable = None) -> None:
        was_open = self.is_open
        self.is_open = False
        if self.serial is not None:
            try:
                if self._loop is not None:
                    self._loop.remove_reader(self.serial.fileno())
                self.serial.close()
            except (serial.SerialException, OSError, ValueError):
                self.log.debug("Closing serial port failed", exc_info=True)
            finally:
                self.serial = None
        if was_open:
            self.emit("close", False)
        if callback:
            callback(None)

    def destroy(self) -> None:
        self.close()
        super().destroy()
