"""Modbus RTU over TCP to EASUN WiFi module proxy

Can be used with Home Assistant's native Modbus integration using config below:

- name: "easun-modbus-proxy"
  type: rtuovertcp
  host: 192.168.1.20
  port: 1502
  delay: 1
  retry_on_empty: true
  sensors:
    [...]

"""

import argparse
import asyncio
import logging
import sys
from functools import partial

from pyeasun import PyEasunAsync


async def handle_client(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    easun: PyEasunAsync,
):
    addr = writer.get_extra_info("peername")

    print(f"{addr}: New connection")

    try:
        while True:
            modbus_request = await reader.read(1024)
            if not modbus_request:
                break
            try:
                reply = await easun.send_raw_modbus_frame(modbus_request)
                writer.write(reply)
            except TimeoutError:
                logging.getLogger(__name__).debug("%s: No reply", addr)

        await writer.drain()
    except OSError:
        # https://github.com/python/cpython/issues/83037
        pass

    print(f"{addr}: Connection closed")


async def run_proxy(bind_address: str, port: int, wifi_ip: str, local_ip: str):
    easun = PyEasunAsync(verbose=True)
    await easun.connect_wifi_device(wifi_ip, local_ip)

    server = await asyncio.start_server(
        partial(handle_client, easun=easun),
        bind_address,
        port,
    )
    try:
        async with server:
            print(f"Listening on {bind_address}:{port}")
            await server.serve_forever()
    finally:
        await easun.disconnect()


def main():
    parser = argparse.ArgumentParser(
        prog="easun rtu proxy",
        description="A Modbus RTU over TCP Proxy for EASUN WiFi modules",
    )
    parser.add_argument(
        "-b", "--bind", default="0.0.0.0", help="The address to listen on"
    )
    parser.add_argument(
        "-p", "--port", default=1502, type=int, help="The TCP port to listen on"
    )
    parser.add_argument(
        "-w", "--wifi", required=True, help="The IP address of the WiFi module"
    )
    parser.add_argument(
        "-l",
        "--local",
        required=True,
        help="The local IP address the WiFi module connects back to",
    )
    args = parser.parse_args()

    try:
        asyncio.run(run_proxy(args.bind, args.port, args.wifi, args.local))
    except Exception as e:
        print(f"Exception: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
