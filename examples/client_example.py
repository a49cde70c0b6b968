"""A basic client demonstrating how to use pyeasun."""

import asyncio

from pyeasun import REGISTERS, BridgeState, PyEasunAsync
from pyeasun.registers import OutputPriority


def on_status_change(state: BridgeState):
    print(f"WiFi link is now {state.value}")


async def main():
    """Create new PyEasunAsync instance and connect through the WiFi module

    The WiFi module at 192.168.1.50 is told to connect back to
    192.168.1.10:8899, so that address must be reachable from the module.
    """
    easun = PyEasunAsync(mb_slave_id=1, on_status_change=on_status_change)
    await easun.connect_wifi_device("192.168.1.50", "192.168.1.10")

    """Query two holding registers, results as a list"""
    print(await easun.read_holding_registers(register_addr=256, quantity=2))

    """Query battery voltage, scaled, result as a float"""
    print(await easun.read_number(REGISTERS["BatteryVoltage"]))

    """Query output priority, formatted with its selection name"""
    print(await easun.read_formatted(REGISTERS["OutputPriority"]))

    """Change output priority"""
    print(await easun.write_number(REGISTERS["OutputPriority"], OutputPriority.PV_FIRST))

    await easun.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
