"""registers.py

Register descriptions for EASUN (SMG-II) inverters. Every physical quantity
is read with Modbus function code 3 and scaled with ``rate``.
"""

import re
import enum
import datetime

from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class Selection:
    """Named value of an enumerated register"""

    no: int
    name: str
    desc: str = ""


@dataclass(frozen=True)
class RegisterConfig:
    """
    Single register description

    :param name: Human readable name
    :param address: Modbus holding register address
    :param length: Number of registers
    :param rate: Scaling factor from raw register value to unit
    :param format: printf style format string (``%d``, ``%.1f``, ``%s``)
    :param unit: Unit appended to formatted values
    :param signed: Raw value is a signed 16-bit integer
    :param sel: Named values of an enumerated register

    """

    name: str
    address: int
    length: int = 1
    rate: float = 1
    format: str = "%d"
    unit: str = ""
    signed: bool = False
    sel: tuple[Selection, ...] = field(default_factory=tuple)


class MachineState(enum.IntEnum):
    POWER_ON = 0
    STAND_BY = 1
    INITIALIZATION = 2
    SOFT_START = 3
    RUNNING_IN_LINE = 4
    RUNNING_IN_INVERTER = 5
    INVERT_TO_LINE = 6
    LINE_TO_INVERT = 7
    REMAIN = 8
    REMAIN_ = 9
    SHUTDOWN = 10
    FAULT = 11


class OutputPriority(enum.IntEnum):
    PV_FIRST = 0
    MAINS_FIRST = 1
    BATTERY_FIRST = 2


class OutputFrequency(enum.IntEnum):
    HZ50 = 50
    HZ60 = 60


class ChargerSourcePriority(enum.IntEnum):
    PV_FIRST = 0
    MAINS_FIRST = 1
    PV_AND_MAINS = 2
    ONLY_PV = 3


class BatteryType(enum.IntEnum):
    USER_DEFINED = 0
    SLD = 1
    FLD = 2
    GEL = 3
    LIFEPO_X14 = 4
    LIFEPO_X15 = 5
    LIFEPO_X16 = 6
    LIFEPO_X7 = 7
    LIFEPO_X8 = 8
    LIFEPO_X9 = 9
    TERNARY_LI_X7 = 10
    TERNARY_LI_X8 = 11
    TERNARY_LI_X13 = 12
    TERNARY_LI_X14 = 13


def _selection(enum_cls) -> tuple[Selection, ...]:
    return tuple(Selection(member.value, member.name) for member in enum_cls)


REGISTERS = {
    # Information
    "APPVersion": RegisterConfig("APP version", 20, rate=0.01, format="%.2f"),
    "BootloaderVersion": RegisterConfig(
        "Bootloader software version", 21, rate=0.01, format="%.2f", unit="V"
    ),
    "CompileTime": RegisterConfig("Compile time", 33, length=20, format="%s"),
    "ProductSN": RegisterConfig("Product SN", 53, length=20, format="%s"),
    "PowerRate": RegisterConfig("Power rate", 57624, rate=0.1, format="%.1f", unit="kW"),
    # Battery
    "BatterySOC": RegisterConfig("Battery SOC(%)", 256, unit="%"),
    "BatteryVoltage": RegisterConfig(
        "Battery voltage", 257, rate=0.1, format="%.1f", unit="V"
    ),
    "BatteryCurrent": RegisterConfig(
        "Battery current", 258, rate=0.1, format="%.1f", unit="A", signed=True
    ),
    # PV
    "PVVoltage1": RegisterConfig("PV voltage1", 263, rate=0.1, format="%.1f", unit="V"),
    "PVCurrent": RegisterConfig("PV current", 264, rate=0.1, format="%.1f", unit="A"),
    "PVPower": RegisterConfig("PV power", 265, unit="W"),
    # Line / load
    "MachineState": RegisterConfig(
        "Machine state", 528, sel=_selection(MachineState)
    ),
    "LineVoltage": RegisterConfig("Line voltage", 531, rate=0.1, format="%.1f", unit="V"),
    "LoadStatus": RegisterConfig("Load status", 539),
    # Parameters
    "BatteryType": RegisterConfig("Battery type", 57348, sel=_selection(BatteryType)),
    "OutputPriority": RegisterConfig(
        "Output priority", 57860, sel=_selection(OutputPriority)
    ),
    "OutputFrequency": RegisterConfig(
        "Output frequency",
        57865,
        rate=0.01,
        format="%.2f",
        unit="Hz",
        sel=_selection(OutputFrequency),
    ),
    "MaxChargerCurrent": RegisterConfig(
        "Max charger current", 57866, rate=0.1, format="%.1f", unit="A"
    ),
    "ChargerSourcePriority": RegisterConfig(
        "Charger source priority", 57871, sel=_selection(ChargerSourcePriority)
    ),
    # Daily statistics
    "PVEnergyToday": RegisterConfig(
        "PV energy", 61487, rate=0.1, format="%.1f", unit="kWh"
    ),
    "BatteryChargeEnergyToday": RegisterConfig("Battery charge energy", 61485, unit="Ah"),
    "BatteryDischargeEnergyToday": RegisterConfig(
        "Battery discharge energy", 61486, unit="Ah"
    ),
    "LoadConsumEnergyToday": RegisterConfig(
        "Load consum energy", 61488, rate=0.1, format="%.1f", unit="kWh"
    ),
}


_FLOAT_FORMAT = re.compile(r"^%\.(\d+)f$")


def decode_number(values: list[int], reg: RegisterConfig) -> Union[int, float]:
    """
    Combine raw register values into a scaled number

    Multi-register values are stored low word first. Signed registers are
    decoded as a 16-bit two's complement of the first register.

    :param values: Raw register values
    :type values: list[int]
    :param reg: Register description
    :type reg: RegisterConfig
    :return: Scaled value
    :rtype: int | float

    """
    if reg.signed:
        value = values[0] - 0x10000 if values[0] & 0x8000 else values[0]
    else:
        value = 0
        for i, register in enumerate(values):
            value += register << (i * 16)
    if reg.rate == 1:
        return value
    # 123 / (1 / 0.1) == 12.3 while 123 * 0.1 is not
    return value / (1 / reg.rate)


def decode_string(values: list[int]) -> str:
    """One character per register, trailing padding removed"""
    return "".join(chr(v) for v in values).rstrip("\x00 ")


def format_number(value, reg: RegisterConfig) -> str:
    """
    Format a scaled value with the register's format string, unit and
    selection name

    :param value: Scaled value
    :type value: int | float
    :param reg: Register description
    :type reg: RegisterConfig
    :return: e.g. ``"52.3 V"`` or ``"PV_FIRST (0)"``
    :rtype: str

    """
    match = _FLOAT_FORMAT.match(reg.format)
    if match:
        text = f"{value:.{int(match.group(1))}f}"
    elif reg.format:
        try:
            text = reg.format % value
        except TypeError:
            text = str(value)
    else:
        text = str(value)

    if reg.unit:
        text = f"{text} {reg.unit}"

    for item in reg.sel:
        if item.no == value:
            text = f"{item.name} ({text})"
            break

    return text


def format_date_value(values: list[int]) -> Optional[datetime.datetime]:
    """
    Decode ``[years since 1970, month, day, hour, minute, second]``

    :param values: Raw register values
    :type values: list[int]
    :return: Decoded timestamp, or None if **values** is not 6 registers long
    :rtype: datetime.datetime

    """
    if len(values) != 6:
        return None
    year, month, day, hour, minute, second = values
    return datetime.datetime(1970 + year, month, day, hour, minute, second)
