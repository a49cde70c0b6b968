"""This is a Python module to interact with EASUN solar inverters over Modbus
RTU, either through a serial port or through the inverter's WiFi module"""

from pyeasun.pyeasun import PyEasunAsync
from pyeasun.pyeasun import NotConnectedError
from pyeasun.pyeasun import ModbusResponseError
from pyeasun.serialport import SerialEndpoint, VirtualSerialPort, PySerialPort
from pyeasun.wifi import WifiBridge, BridgeState
from pyeasun.wifi import NoSocketAvailableError
from pyeasun.wifi import DiscoveryTimeoutError
from pyeasun.wifi import BridgeBusyError
from pyeasun.registers import REGISTERS, RegisterConfig

name = "pyeasun"  # pylint: disable=invalid-name (C0103)

__all__ = [
    "PyEasunAsync",
    "NotConnectedError",
    "ModbusResponseError",
    "SerialEndpoint",
    "VirtualSerialPort",
    "PySerialPort",
    "WifiBridge",
    "BridgeState",
    "NoSocketAvailableError",
    "DiscoveryTimeoutError",
    "BridgeBusyError",
    "REGISTERS",
    "RegisterConfig",
]
