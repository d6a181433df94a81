"""
IEC 60870-5-104 Controlled Station (Slave / RTU)
================================================

Asynchronous TCP server for IEC 104 protocol.

Features:
    - Multi-client support (SCADA masters can connect)
    - Point database per common address (monitored points and control points)
    - Commands with select-before-operate and spontaneous feedback
    - General/group interrogation and counter interrogation
    - Read, clock synchronization, test, delay acquisition and reset process commands
    - Negative confirmations for unknown type, cause, common address and IOA

Usage:
    server = IEC104Server(host='0.0.0.0', port=2404, name='RTU-1')
    server.add_point(1, 100, TypeID.M_ME_NC_1, FloatMeasurement(230.5))
    server.add_control(1, 5000, TypeID.C_SC_NA_1, callback=on_breaker, feedback_address=100)
    await server.start()
    await server.update_point(1, 100, FloatMeasurement(231.0))
    await server.stop()

Standard IEC 104 port: 2404/TCP
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from telecontrol.config import IEC104Settings
from telecontrol.iec104 import elements
from telecontrol.iec104.asdu import AsduCodec
from telecontrol.iec104.connection import ConnectionState
from telecontrol.iec104.elements import CP56Time2a, Element, is_select
from telecontrol.iec104.errors import (
    AsduDecodeError,
    LinkClosedError,
    NotStartedError,
    UnknownCauseError,
    UnknownTypeError,
)
from telecontrol.iec104.events import EventHandler, LinkStateChanged, ProcessEvent
from telecontrol.iec104.messages import (
    ASDU,
    ELEMENT_TYPES,
    IOA_SIZE,
    MAX_ASDU_LENGTH,
    MAX_OBJECTS,
    MONITOR_TYPES,
    CauseOfTransmission,
    InformationObject,
    TypeID,
    base_type,
    counter_cause,
    has_time_tag,
    interrogation_cause,
)
from telecontrol.iec104.selection import SelectionManager
from telecontrol.iec104.session import Role, Session
from telecontrol.iec104.transport import StreamTransport, Transport


logger = logging.getLogger(__name__)

COT = CauseOfTransmission

# System commands that may be addressed to every station at once
_BROADCAST_TYPES = {TypeID.C_IC_NA_1, TypeID.C_CI_NA_1, TypeID.C_CS_NA_1, TypeID.C_RP_NA_1}


@dataclass
class DataPoint:
    """Monitored point (status, measurement or counter)"""
    common_address: int
    address: int
    type_id: TypeID
    element: Element
    group: Optional[int] = None     # interrogation group 1..16, counter group 1..4
    time: Optional[CP56Time2a] = None
    frozen: Optional[elements.BinaryCounter] = None

    @property
    def is_counter(self) -> bool:
        return isinstance(self.element, elements.BinaryCounter)


@dataclass
class ControlPoint:
    """Command target"""
    common_address: int
    address: int
    type_id: TypeID                 # command type without time tag
    callback: Optional[Callable] = None
    select_required: bool = False
    feedback_address: Optional[int] = None


class IEC104Server:
    """
    IEC 60870-5-104 TCP Server

    Accepts connections from SCADA masters and serves the point database.
    """

    def __init__(self, host: str = '0.0.0.0', port: Optional[int] = None,
                 settings: Optional[IEC104Settings] = None,
                 name: str = 'RTU', on_event: Optional[EventHandler] = None,
                 on_audit: Optional[Callable[[dict], None]] = None,
                 log_level=logging.INFO):
        """
        Initialize IEC 104 server

        Args:
            host: Bind address
            port: TCP port (default from settings, 2404)
            settings: Link parameters
            name: Station name used for logging
            on_event: Called with link state changes and process events
            on_audit: Called with a record of every command executed after a selection
            log_level: Logging level
        """
        self.settings = settings or IEC104Settings()
        self.host = host
        self.port = port or self.settings.port
        self.node_name = name
        self.on_event = on_event

        self.logger = logging.getLogger(f"IEC104[{self.node_name}]")
        self.logger.setLevel(log_level)

        # Server state
        self.server: Optional[asyncio.AbstractServer] = None
        self.running = False
        self.sessions: Dict[str, Session] = {}
        self.session_handlers: Set[asyncio.Task] = set()

        # Data management
        self.stations: Set[int] = set()
        self.points: Dict[Tuple[int, int], DataPoint] = {}
        self.controls: Dict[Tuple[int, int], ControlPoint] = {}
        self.selections = SelectionManager(self.settings.select_timeout_s)
        self.selections.set_audit_callback(on_audit)
        self.codec = AsduCodec(self.settings.common_address_size, self.settings.originator_address)
        self.transmission_delay_ms = 0

        self.stats = {
            'commands_executed': 0,
            'commands_rejected': 0,
            'interrogations': 0,
            'spontaneous_sent': 0,
        }

    # ==================== POINT DATABASE ====================

    def add_station(self, common_address: int):
        self.stations.add(common_address)

    def add_point(self, common_address: int, address: int, type_id: TypeID,
                  element: Element, group: Optional[int] = None) -> DataPoint:
        """Register a monitored point"""
        if type_id not in MONITOR_TYPES or type_id == TypeID.M_EI_NA_1:
            raise ValueError(f"{type_id.name} is not a monitored point type")
        element_type = ELEMENT_TYPES[type_id][0]
        if not isinstance(element, element_type):
            raise ValueError(f"{type_id.name} needs {element_type.__name__}")

        point = DataPoint(common_address, address, type_id, element, group)
        if has_time_tag(type_id):
            point.time = CP56Time2a.now()
        self.points[(common_address, address)] = point
        self.stations.add(common_address)
        return point

    def add_control(self, common_address: int, address: int, type_id: TypeID,
                    callback: Optional[Callable] = None, select_required: bool = False,
                    feedback_address: Optional[int] = None) -> ControlPoint:
        """Register a control point accepting one command type (with or without time tag)"""
        command_type = base_type(type_id)
        if command_type not in ELEMENT_TYPES or not 45 <= command_type <= 51:
            raise ValueError(f"{type_id.name} is not a command type")

        control = ControlPoint(common_address, address, command_type, callback,
                               select_required, feedback_address)
        self.controls[(common_address, address)] = control
        self.stations.add(common_address)
        return control

    def register_control_callback(self, common_address: int, address: int,
                                  callback: Callable):
        """
        Register callback for control commands

        Callback will be invoked with the command element when a master
        executes a command on this IOA. It may return the element to report
        on the feedback point.
        """
        self.controls[(common_address, address)].callback = callback

    def get_point(self, common_address: int, address: int) -> Optional[DataPoint]:
        return self.points.get((common_address, address))

    async def update_point(self, common_address: int, address: int, element: Element,
                           time: Optional[CP56Time2a] = None,
                           cause: CauseOfTransmission = COT.SPONTANEOUS):
        """
        Store a new value and send it to every started session

        Args:
            common_address: Station address
            address: IOA of the point
            element: New value
            time: Time tag for time-tagged types (current time if omitted)
            cause: Cause of transmission (spontaneous by default)

        Raises:
            ValueError: element of the wrong kind or out of range for its type
        """
        point = self.points[(common_address, address)]
        if not isinstance(element, type(point.element)):
            raise ValueError(f"IOA {address} holds {type(point.element).__name__}")

        if has_time_tag(point.type_id):
            time = time or CP56Time2a.now()
        else:
            time = None

        asdu = ASDU(point.type_id, cause, common_address=common_address,
                    objects=[InformationObject(address, element, time)])
        self.codec.encode(asdu)

        point.element = element
        point.time = time
        await self._broadcast(asdu)

    async def _broadcast(self, asdu: ASDU):
        for session in list(self.sessions.values()):
            if not session.is_active():
                continue
            try:
                await session.send(asdu)
                self.stats['spontaneous_sent'] += 1
            except (LinkClosedError, NotStartedError) as e:
                self.logger.warning(f"Failed to send {asdu.type_id.name} to {session.name}: {e}")

    # ==================== SERVER ====================

    async def start(self):
        """Start IEC 104 TCP server"""
        try:
            self.server = await asyncio.start_server(
                self._handle_client,
                self.host,
                self.port
            )
            self.running = True
            addr = self.server.sockets[0].getsockname()
            self.logger.info(f"IEC 104 server started on {addr[0]}:{addr[1]}")

        except OSError as e:
            self.logger.error(f"Failed to start IEC 104 server: {e}")
            raise

    async def stop(self):
        """Stop IEC 104 TCP server"""
        self.running = False

        # Close server
        if self.server:
            self.server.close()
            await self.server.wait_closed()

        # Close all client sessions
        for session in list(self.sessions.values()):
            await session.close()

        if self.session_handlers:
            await asyncio.gather(*self.session_handlers, return_exceptions=True)

        self.logger.info("IEC 104 server stopped")

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter):
        """Handle new client connection"""
        task = asyncio.current_task()
        self.session_handlers.add(task)
        try:
            await self.serve_transport(StreamTransport(reader, writer))
        finally:
            self.session_handlers.discard(task)

    async def serve_transport(self, transport: Transport):
        """
        Serve one master over a transport until the link closes

        This coroutine manages a single client from connection to disconnection.
        """
        if len(self.sessions) >= self.settings.max_clients:
            self.logger.warning(f"Connection rejected from {transport.name}: max clients reached")
            transport.close()
            await transport.wait_closed()
            return

        session = Session(transport, Role.SLAVE, self.settings)
        session.on_event = lambda event: self._on_session_event(session, event)
        self.sessions[session.name] = session
        self.logger.info(f"Client connected: {session.name}")
        session.start()

        try:
            while True:
                try:
                    await self._serve_next(session)
                except NotStartedError as e:
                    # STOPDT arrived mid-reply; the rest of the reply is dropped
                    self.logger.warning(f"Reply to {session.name} abandoned: {e}")

        except LinkClosedError as e:
            self.logger.info(f"Client disconnected: {session.name} ({e})")

        finally:
            if self.sessions.get(session.name) is session:
                del self.sessions[session.name]
            await session.close()

    async def _serve_next(self, session: Session):
        """Receive one ASDU and answer it"""
        try:
            asdu = await session.receive()
        except AsduDecodeError as e:
            await self._reject_undecodable(session, e)
            return
        await self._handle_asdu(session, asdu)

    def _on_session_event(self, session: Session, event):
        if (isinstance(event, LinkStateChanged)
                and event.state == ConnectionState.CONNECTED_STARTED
                and self.settings.send_end_of_init):
            asyncio.ensure_future(self._send_end_of_init(session))
        if self.on_event is not None:
            return self.on_event(event)

    async def _send_end_of_init(self, session: Session):
        for common_address in sorted(self.stations):
            asdu = ASDU(TypeID.M_EI_NA_1, COT.INITIALIZED, common_address=common_address,
                        objects=[InformationObject(0, elements.EndOfInitialization())])
            try:
                await session.send(asdu)
            except (LinkClosedError, NotStartedError) as e:
                self.logger.warning(f"End of initialization not sent to {session.name}: {e}")
                return

    # ==================== REQUEST HANDLING ====================

    async def _reply(self, session: Session, asdu: ASDU, cause: CauseOfTransmission,
                     negative: bool = False):
        if negative:
            self.logger.warning(f"Negative confirmation {cause.name} for {asdu}")
        await session.send(asdu.mirror(cause, negative))

    async def _reject_undecodable(self, session: Session, error: AsduDecodeError):
        """Negative mirror of an ASDU the codec could not decode"""
        if isinstance(error, UnknownTypeError):
            cause = COT.UNKNOWN_TYPE
        elif isinstance(error, UnknownCauseError):
            cause = COT.UNKNOWN_CAUSE
        else:
            self.logger.warning(f"Dropped ASDU from {session.name}: {error}")
            return

        if error.common_address is not None and not self._known_station(error.common_address):
            cause = COT.UNKNOWN_COMMON_ADDRESS
        if not session.is_active():
            return
        self.logger.warning(f"Rejecting ASDU from {session.name}: {error}")
        await session.send(session.codec.negative_mirror(error.raw, cause))

    def _known_station(self, common_address: int) -> bool:
        return common_address in self.stations or common_address == self.codec.broadcast_address

    async def _handle_asdu(self, session: Session, asdu: ASDU):
        """Handle received ASDU from client"""
        if asdu.type_id in MONITOR_TYPES:
            await self._reply(session, asdu, COT.UNKNOWN_TYPE, negative=True)
            return

        if not self._known_station(asdu.common_address):
            await self._reply(session, asdu, COT.UNKNOWN_COMMON_ADDRESS, negative=True)
            return

        if asdu.common_address == self.codec.broadcast_address:
            if asdu.type_id not in _BROADCAST_TYPES:
                await self._reply(session, asdu, COT.UNKNOWN_COMMON_ADDRESS, negative=True)
                return
            for common_address in sorted(self.stations):
                await self._handle_request(session, replace(asdu, common_address=common_address))
            return

        await self._handle_request(session, asdu)

    async def _handle_request(self, session: Session, asdu: ASDU):
        handlers = {
            TypeID.C_IC_NA_1: self._interrogation,
            TypeID.C_CI_NA_1: self._counter_interrogation,
            TypeID.C_RD_NA_1: self._read,
            TypeID.C_CS_NA_1: self._clock_synchronization,
            TypeID.C_TS_NA_1: self._test_command,
            TypeID.C_RP_NA_1: self._reset_process,
            TypeID.C_CD_NA_1: self._delay_acquisition,
            TypeID.C_TS_TA_1: self._test_command_with_time,
        }
        if asdu.is_system_command:
            await handlers[asdu.type_id](session, asdu)
        elif asdu.is_command:
            await self._command(session, asdu)
        else:
            await self._reply(session, asdu, COT.UNKNOWN_TYPE, negative=True)

    # ==================== COMMANDS ====================

    async def _command(self, session: Session, asdu: ASDU):
        """Single/double/regulating step, set-point and bitstring commands"""
        if asdu.cause not in (COT.ACTIVATION, COT.DEACTIVATION):
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return

        obj = asdu.objects[0]
        control = self.controls.get((asdu.common_address, obj.address))
        if control is None:
            self.stats['commands_rejected'] += 1
            await self._reply(session, asdu, COT.UNKNOWN_IOA, negative=True)
            return

        if base_type(asdu.type_id) != control.type_id:
            self.stats['commands_rejected'] += 1
            await self._reply(session, asdu, COT.UNKNOWN_TYPE, negative=True)
            return

        if asdu.cause == COT.DEACTIVATION:
            self.selections.cancel(asdu.common_address, obj.address)
            await self._reply(session, asdu, COT.DEACTIVATION_CONF)
            return

        element = obj.element
        if not element.valid:
            self.stats['commands_rejected'] += 1
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return

        if is_select(element):
            self.selections.select(asdu.common_address, obj.address, asdu.type_id, element)
            await self._reply(session, asdu, COT.ACTIVATION_CONF)
            return

        selection = self.selections.operate(asdu.common_address, obj.address,
                                            asdu.type_id, element)
        if control.select_required and selection is None:
            self.stats['commands_rejected'] += 1
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return

        try:
            feedback = await self._execute_control(control, element)
        except Exception as e:
            self.logger.error(f"Control execution error: IOA={obj.address}: {e}")
            self.stats['commands_rejected'] += 1
            await self._reply(session, asdu, COT.ACTIVATION_CONF, negative=True)
            return

        self.stats['commands_executed'] += 1
        await self._reply(session, asdu, COT.ACTIVATION_CONF)
        await self._send_feedback(control, element, feedback)

    async def _execute_control(self, control: ControlPoint, element: Element):
        """Execute received control command"""
        if control.callback is None:
            return None
        result = control.callback(element)
        if inspect.isawaitable(result):
            result = await result
        self.logger.info(f"Control executed: CA={control.common_address} "
                         f"IOA={control.address} value={getattr(element, 'value', None)}")
        return result

    async def _send_feedback(self, control: ControlPoint, command: Element, feedback):
        if control.feedback_address is None:
            return
        point = self.points.get((control.common_address, control.feedback_address))
        if point is None:
            self.logger.warning(f"Feedback IOA {control.feedback_address} not found")
            return

        if feedback is None:
            feedback = _feedback_element(point.element, command)
        if feedback is None:
            return
        await self.update_point(control.common_address, control.feedback_address, feedback)

    # ==================== SYSTEM COMMANDS ====================

    async def _interrogation(self, session: Session, asdu: ASDU):
        """General or group interrogation: confirm, stream points, terminate"""
        qoi = asdu.objects[0].element
        if asdu.cause != COT.ACTIVATION:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        if not qoi.valid:
            await self._reply(session, asdu, COT.ACTIVATION_CONF, negative=True)
            return

        self.stats['interrogations'] += 1
        self.logger.info(f"Interrogation CA={asdu.common_address} QOI={qoi.value} from {session.name}")
        await self._reply(session, asdu, COT.ACTIVATION_CONF)

        group = qoi.group
        points = [p for p in self._station_points(asdu.common_address)
                  if not p.is_counter and (group is None or p.group == group)]
        for response in _pack(points, asdu.common_address,
                              interrogation_cause(qoi.value), session.codec.header_size):
            await session.send(response)

        await self._reply(session, asdu, COT.ACTIVATION_TERM)

    async def _counter_interrogation(self, session: Session, asdu: ASDU):
        """Counter read, freeze, freeze with reset and reset"""
        qcc = asdu.objects[0].element
        if asdu.cause != COT.ACTIVATION:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        if not qcc.valid:
            await self._reply(session, asdu, COT.ACTIVATION_CONF, negative=True)
            return

        self.stats['interrogations'] += 1
        await self._reply(session, asdu, COT.ACTIVATION_CONF)

        group = qcc.group
        counters = [p for p in self._station_points(asdu.common_address)
                    if p.is_counter and (group is None or p.group == group)]

        if qcc.freeze == elements.FreezeCode.READ:
            reports = [replace(p, element=p.frozen or p.element) for p in counters]
            for response in _pack(reports, asdu.common_address,
                                  counter_cause(qcc.request), session.codec.header_size):
                await session.send(response)
        else:
            for point in counters:
                if qcc.freeze in (elements.FreezeCode.FREEZE, elements.FreezeCode.FREEZE_AND_RESET):
                    point.frozen = point.element.advance()
                if qcc.freeze in (elements.FreezeCode.FREEZE_AND_RESET, elements.FreezeCode.RESET):
                    point.element = point.element.advance(0)

        await self._reply(session, asdu, COT.ACTIVATION_TERM)

    async def _read(self, session: Session, asdu: ASDU):
        if asdu.cause != COT.REQUEST:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return

        point = self.points.get((asdu.common_address, asdu.objects[0].address))
        if point is None:
            await self._reply(session, asdu, COT.UNKNOWN_IOA, negative=True)
            return

        await session.send(ASDU(point.type_id, COT.REQUEST,
                                originator=asdu.originator,
                                common_address=point.common_address,
                                objects=[InformationObject(point.address, point.element, point.time)]))

    async def _clock_synchronization(self, session: Session, asdu: ASDU):
        if asdu.cause != COT.ACTIVATION:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        self._process_event(session, asdu)
        await self._reply(session, asdu, COT.ACTIVATION_CONF)

    async def _test_command(self, session: Session, asdu: ASDU):
        if asdu.cause != COT.ACTIVATION:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        valid = asdu.objects[0].element.valid
        await self._reply(session, asdu, COT.ACTIVATION_CONF, negative=not valid)

    async def _test_command_with_time(self, session: Session, asdu: ASDU):
        """C_TS_TA_1: the confirmation echoes the counter and the time tag"""
        if asdu.cause != COT.ACTIVATION:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        await self._reply(session, asdu, COT.ACTIVATION_CONF)

    async def _delay_acquisition(self, session: Session, asdu: ASDU):
        """
        C_CD_NA_1

        Activation starts a delay measurement and is confirmed; a spontaneous
        one carries the transmission delay the master measured; it is stored
        in transmission_delay_ms and not confirmed.
        """
        delay = asdu.objects[0].element
        if asdu.cause not in (COT.ACTIVATION, COT.SPONTANEOUS):
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        if not delay.valid:
            if asdu.cause == COT.ACTIVATION:
                await self._reply(session, asdu, COT.ACTIVATION_CONF, negative=True)
            else:
                self.logger.warning(f"Ignoring transmission delay {delay.milliseconds} ms")
            return

        self._process_event(session, asdu)
        if asdu.cause == COT.SPONTANEOUS:
            self.transmission_delay_ms = delay.milliseconds
            self.logger.info(f"Transmission delay {delay.milliseconds} ms from {session.name}")
            return
        await self._reply(session, asdu, COT.ACTIVATION_CONF)

    async def _reset_process(self, session: Session, asdu: ASDU):
        if asdu.cause != COT.ACTIVATION:
            await self._reply(session, asdu, COT.UNKNOWN_CAUSE, negative=True)
            return
        if not asdu.objects[0].element.valid:
            await self._reply(session, asdu, COT.ACTIVATION_CONF, negative=True)
            return

        self.selections.cancel(asdu.common_address)
        self._process_event(session, asdu)
        await self._reply(session, asdu, COT.ACTIVATION_CONF)

    def _process_event(self, session: Session, asdu: ASDU):
        obj = asdu.objects[0]
        session.emit(ProcessEvent(asdu.common_address, obj.address, asdu.type_id,
                                  asdu.cause, obj.element, obj.time))

    def _station_points(self, common_address: int) -> List[DataPoint]:
        return [p for (ca, _), p in sorted(self.points.items()) if ca == common_address]

    # ==================== STATUS ====================

    def get_status(self) -> dict:
        """Get server status"""
        return {
            'running': self.running,
            'connections': len(self.sessions),
            'stations': sorted(self.stations),
            'points': len(self.points),
            'controls': len(self.controls),
            'selections': self.selections.to_list(),
            'transmission_delay_ms': self.transmission_delay_ms,
            'stats': dict(self.stats),
            'clients': [
                {
                    'address': name,
                    'state': session.state.name,
                    'send_seq': session.fsm.send_sequence,
                    'recv_seq': session.fsm.recv_sequence,
                }
                for name, session in self.sessions.items()
            ]
        }

    def __str__(self):
        return (f"IEC104Server[{self.node_name}]({self.host}:{self.port}) "
                f"clients={len(self.sessions)} points={len(self.points)}")


def _feedback_element(current: Element, command: Element) -> Optional[Element]:
    """Status a command leaves on its feedback point, None if it cannot be derived"""
    if isinstance(current, elements.SinglePoint):
        return replace(current, value=bool(command.value))
    if isinstance(current, elements.DoublePoint):
        return replace(current, value=elements.DoublePointValue(int(command.value) & 0x03))
    if isinstance(current, elements.StepPosition):
        step = 1 if command.value == elements.RegulatingStepValue.HIGHER else -1
        return replace(current, value=max(-64, min(63, current.value + step)))
    if isinstance(current, (elements.NormalizedMeasurement, elements.ScaledMeasurement,
                            elements.FloatMeasurement, elements.Bitstring32)):
        return replace(current, value=command.value)
    return None


def _pack(points: List[DataPoint], common_address: int, cause: CauseOfTransmission,
          header_size: int) -> List[ASDU]:
    """Group points by type (time tags stripped) into ASDUs that fit the frame"""
    by_type: Dict[TypeID, List[DataPoint]] = {}
    for point in points:
        by_type.setdefault(base_type(point.type_id), []).append(point)

    responses = []
    for type_id, group in by_type.items():
        element_size = ELEMENT_TYPES[type_id][0].SIZE
        per_asdu = min(MAX_OBJECTS, (MAX_ASDU_LENGTH - header_size) // (IOA_SIZE + element_size))
        for start in range(0, len(group), per_asdu):
            chunk = group[start:start + per_asdu]
            responses.append(ASDU(type_id, cause, common_address=common_address,
                                  objects=[InformationObject(p.address, p.element)
                                           for p in chunk]))
    return responses
