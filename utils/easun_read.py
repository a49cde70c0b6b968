"""Read every known register of an EASUN inverter"""

import asyncio
from argparse import ArgumentParser

import umodbus.exceptions

from pyeasun import REGISTERS, PyEasunAsync


async def read_all(easun: PyEasunAsync):
    for key, reg in REGISTERS.items():
        try:
            value = await easun.read_formatted(reg)
        except (TimeoutError, umodbus.exceptions.ModbusError) as e:
            value = f"<{type(e).__name__}>"
        print(f"{key:<28} {reg.address:05}  {reg.name}: {value}")


async def run(opts):
    easun = PyEasunAsync(mb_slave_id=opts.slave, verbose=opts.verbose)
    if opts.serial:
        await easun.connect_serial(opts.serial)
    else:
        await easun.connect_wifi_device(opts.wifi, opts.local)
    try:
        await read_all(easun)
    finally:
        await easun.disconnect()


def main():
    parser = ArgumentParser("easun-read", description="Dump EASUN inverter registers")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--serial", help="Serial device, e.g. /dev/ttyUSB0")
    group.add_argument("--wifi", help="IP address of the WiFi module")
    parser.add_argument(
        "--local", help="Local IP address the WiFi module connects back to"
    )
    parser.add_argument("--slave", default=1, type=int, help="Modbus slave ID")
    parser.add_argument("--verbose", action="store_true")
    opts = parser.parse_args()
    if opts.wifi and not opts.local:
        parser.error("--wifi requires --local")
    asyncio.run(run(opts))


if __name__ == "__main__":
    main()
