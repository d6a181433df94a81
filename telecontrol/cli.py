#!/usr/bin/env python3
"""
IEC 104 Simulator CLI

Runs a demo controlled station (RTU) or a demo controlling station (master).

Usage:
    iec104-sim slave --port 2404
    iec104-sim master --host 127.0.0.1 --port 2404 --ca 1

The slave serves one station with a breaker (double point + double command),
a bus voltage, an active power measurement and an energy counter, and drifts
the measurements every few seconds. The master connects, interrogates the
station, reads the counters, toggles the breaker with select-before-operate
and then prints spontaneous data until interrupted.
"""

import asyncio
import logging
import random
from typing import Optional

from telecontrol.config import IEC104Settings, setup_logging
from telecontrol.iec104 import elements
from telecontrol.iec104.client import IEC104Client
from telecontrol.iec104.events import LinkStateChanged, PointEvent
from telecontrol.iec104.messages import TypeID
from telecontrol.iec104.server import IEC104Server

logger = logging.getLogger(__name__)

# Demo station layout
IOA_BREAKER_STATUS = 1001
IOA_BUS_VOLTAGE = 2001
IOA_ACTIVE_POWER = 2002
IOA_ENERGY = 3001
IOA_BREAKER_COMMAND = 5001


def build_demo_server(common_address: int, port: Optional[int] = None,
                      settings: Optional[IEC104Settings] = None) -> IEC104Server:
    """RTU with one bay: breaker, voltage, power and an energy counter"""
    server = IEC104Server(port=port, settings=settings, name=f"RTU-{common_address}")

    server.add_point(common_address, IOA_BREAKER_STATUS, TypeID.M_DP_TB_1,
                     elements.DoublePoint(elements.DoublePointValue.ON), group=1)
    server.add_point(common_address, IOA_BUS_VOLTAGE, TypeID.M_ME_NC_1,
                     elements.FloatMeasurement(110.0), group=2)
    server.add_point(common_address, IOA_ACTIVE_POWER, TypeID.M_ME_NC_1,
                     elements.FloatMeasurement(42.5), group=2)
    server.add_point(common_address, IOA_ENERGY, TypeID.M_IT_NA_1,
                     elements.BinaryCounter(0), group=1)

    def on_breaker(command: elements.DoubleCommand):
        logger.info(f"Breaker {elements.DoubleCommandValue(command.value).name}")

    server.add_control(common_address, IOA_BREAKER_COMMAND, TypeID.C_DC_NA_1,
                       callback=on_breaker, select_required=True,
                       feedback_address=IOA_BREAKER_STATUS)
    return server


async def run_slave(common_address: int, port: Optional[int], interval_s: float):
    server = build_demo_server(common_address, port)
    await server.start()

    energy = 0
    try:
        while True:
            await asyncio.sleep(interval_s)
            voltage = server.get_point(common_address, IOA_BUS_VOLTAGE).element.value
            power = server.get_point(common_address, IOA_ACTIVE_POWER).element.value
            counter = server.get_point(common_address, IOA_ENERGY)

            energy += int(power * interval_s)
            counter.element = counter.element.advance(energy)

            await server.update_point(common_address, IOA_BUS_VOLTAGE,
                                      elements.FloatMeasurement(voltage + random.uniform(-0.5, 0.5)))
            await server.update_point(common_address, IOA_ACTIVE_POWER,
                                      elements.FloatMeasurement(max(0.0, power + random.uniform(-2, 2))))
    finally:
        await server.stop()


def print_event(event):
    if isinstance(event, LinkStateChanged):
        print(f"[link] {event.peer} {event.state.name} {event.reason or ''}")
    elif isinstance(event, PointEvent):
        print(f"[{event.cause.name}] CA={event.common_address} IOA={event.address} "
              f"{event.type_id.name} value={event.value}")


async def run_master(host: str, port: Optional[int], common_address: int):
    client = IEC104Client(host, port, on_event=print_event)
    await client.connect()

    try:
        result = await client.general_interrogation(common_address)
        print(f"Interrogation: {len(result.objects)} objects, positive={result.positive}")

        result = await client.counter_interrogation(common_address)
        print(f"Counters: {[obj.element.value for obj in result.objects]}")

        status = client.get_measurement(common_address, IOA_BREAKER_STATUS)
        target = elements.DoubleCommandValue.ON
        if status is not None and status.value == elements.DoublePointValue.ON:
            target = elements.DoubleCommandValue.OFF

        command = await client.select_and_execute(common_address, IOA_BREAKER_COMMAND,
                                                  elements.DoubleCommand(target))
        print(f"Breaker {target.name}: {'confirmed' if command.positive else 'rejected'}")

        await client.session.wait_closed()
    finally:
        await client.disconnect()


def main():
    import argparse

    parser = argparse.ArgumentParser(description="IEC 60870-5-104 Simulator")
    parser.add_argument("--log-level", default=None, help="Logging level (default from LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="role", required=True)

    slave = subparsers.add_parser("slave", help="Run a demo RTU")
    slave.add_argument("--port", type=int, default=None, help="TCP port (default: 2404)")
    slave.add_argument("--ca", type=int, default=1, help="Common address (default: 1)")
    slave.add_argument("-i", "--interval", type=float, default=5.0,
                       help="Measurement update interval in seconds (default: 5)")

    master = subparsers.add_parser("master", help="Run a demo SCADA master")
    master.add_argument("--host", default="127.0.0.1", help="RTU address")
    master.add_argument("--port", type=int, default=None, help="TCP port (default: 2404)")
    master.add_argument("--ca", type=int, default=1, help="Common address (default: 1)")

    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        if args.role == "slave":
            asyncio.run(run_slave(args.ca, args.port, args.interval))
        else:
            asyncio.run(run_master(args.host, args.port, args.ca))
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()
