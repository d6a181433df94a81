"""
IEC 60870-5-104 Protocol Implementation
========================================

IEC 60870-5-104 is the international standard for SCADA communication over TCP/IP.

This package implements:
    - APCI framing (I, S and U frames) with 15 bit sequence numbers
    - ASDU codec for process, control and system information
    - Connection state machine with k/w windows and T1/T2/T3 timers
    - Session supervisor running one asyncio task per link
    - Controlling station (IEC104Client) and controlled station (IEC104Server)

Server behavior:
    - Sends spontaneous transmissions when values change
    - Responds to interrogation with the point database of the station
    - Handles control commands with confirmation and select-before-operate
    - Maintains connection health with keep-alive (test frames)
"""

from telecontrol.iec104.apci import APDU, APCI, APDUType, FrameBuffer, UFrameFunction
from telecontrol.iec104.asdu import AsduCodec
from telecontrol.iec104.client import CommandResult, IEC104Client, InterrogationResult
from telecontrol.iec104.connection import ConnectionState, ConnectionStateMachine
from telecontrol.iec104.errors import (
    AsduDecodeError,
    CommandBusyError,
    CommandTimeoutError,
    FrameError,
    IEC104Error,
    LinkClosedError,
    LinkTimeoutError,
    NotStartedError,
    SequenceError,
)
from telecontrol.iec104.events import (
    CommandConfirmation,
    CounterReport,
    InterrogationComplete,
    LinkStateChanged,
    MeasuredValue,
    ProcessEvent,
    StatusChanged,
)
from telecontrol.iec104.messages import ASDU, CauseOfTransmission, InformationObject, TypeID
from telecontrol.iec104.server import IEC104Server
from telecontrol.iec104.session import Role, Session
from telecontrol.iec104.transport import StreamTransport, memory_pipe

__all__ = [
    'APDU',
    'APCI',
    'APDUType',
    'ASDU',
    'AsduCodec',
    'AsduDecodeError',
    'CauseOfTransmission',
    'CommandBusyError',
    'CommandConfirmation',
    'CommandResult',
    'CommandTimeoutError',
    'ConnectionState',
    'ConnectionStateMachine',
    'CounterReport',
    'FrameBuffer',
    'FrameError',
    'IEC104Client',
    'IEC104Error',
    'IEC104Server',
    'InformationObject',
    'InterrogationComplete',
    'InterrogationResult',
    'LinkClosedError',
    'LinkStateChanged',
    'LinkTimeoutError',
    'MeasuredValue',
    'NotStartedError',
    'ProcessEvent',
    'Role',
    'SequenceError',
    'Session',
    'StatusChanged',
    'StreamTransport',
    'TypeID',
    'UFrameFunction',
    'memory_pipe',
]
