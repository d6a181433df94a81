"""
IEC 104 Controlling Station (Master)
====================================

Master role on top of a Session.

Features:
    - Connection management with STARTDT/STOPDT handshake
    - General, group and counter interrogation
    - Control commands with activation confirmation, select-before-operate
    - Read, clock synchronization, test, delay acquisition and reset process commands
    - Spontaneous data delivered to the application as events

Only one control request (command or system command) and one interrogation
may be outstanding per common address; a second one raises CommandBusyError
instead of queueing.

Usage:
    client = IEC104Client('10.0.0.5', on_event=handler)
    await client.connect()
    result = await client.general_interrogation(common_address=1)
    result = await client.send_command(1, 5001, SingleCommand(True))
    await client.disconnect()
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from telecontrol.config import IEC104Settings
from telecontrol.iec104 import elements
from telecontrol.iec104.elements import CP56Time2a, Element
from telecontrol.iec104.errors import (
    AsduDecodeError,
    CommandBusyError,
    CommandTimeoutError,
    LinkClosedError,
    LinkTimeoutError,
    NotStartedError,
)
from telecontrol.iec104.events import (
    CommandConfirmation,
    Event,
    EventHandler,
    InterrogationComplete,
    PointEvent,
    point_events,
)
from telecontrol.iec104.messages import (
    ASDU,
    ELEMENT_TYPES,
    MONITOR_TYPES,
    CauseOfTransmission,
    InformationObject,
    TypeID,
    base_type,
    command_type_for,
    has_time_tag,
)
from telecontrol.iec104.session import Role, Session
from telecontrol.iec104.transport import StreamTransport, Transport


logger = logging.getLogger(__name__)

# Request slots; one outstanding request per slot and common address
_COMMAND = 'command'
_INTERROGATION = 'interrogation'
_COUNTER_INTERROGATION = 'counter_interrogation'

_CONFIRMATIONS = (CauseOfTransmission.ACTIVATION_CONF, CauseOfTransmission.DEACTIVATION_CONF)


@dataclass
class CommandResult:
    """Outcome of a command: the activation confirmation, positive or negative"""
    positive: bool
    common_address: int
    address: int
    type_id: TypeID
    cause: CauseOfTransmission
    element: Optional[Element] = None
    time: Optional[CP56Time2a] = None


@dataclass
class InterrogationResult:
    """Outcome of a (counter) interrogation"""
    positive: bool
    common_address: int
    qualifier: int
    asdus: List[ASDU] = field(default_factory=list)

    @property
    def objects(self) -> List[InformationObject]:
        return [obj for asdu in self.asdus for obj in asdu.objects]


class _PendingRequest:
    def __init__(self, request: ASDU, future: asyncio.Future,
                 on_data: Optional[Callable[[ASDU], None]] = None):
        self.request = request
        self.future = future
        self.on_data = on_data
        self.confirmed = False
        self.asdus: List[ASDU] = []

    @property
    def address(self) -> int:
        return self.request.objects[0].address

    def matches(self, asdu: ASDU) -> bool:
        return (base_type(asdu.type_id) == base_type(self.request.type_id)
                and asdu.first_address == self.address)

    def resolve(self, result):
        if not self.future.done():
            self.future.set_result(result)


class IEC104Client:
    """
    IEC 104 controlling station.

    Handles connection lifecycle, request/confirmation correlation and
    delivery of monitor-direction data.
    """

    def __init__(self, host: str = '127.0.0.1', port: Optional[int] = None,
                 settings: Optional[IEC104Settings] = None,
                 on_event: Optional[EventHandler] = None,
                 originator: int = 0):
        """
        Initialize IEC 104 client.

        Args:
            host: RTU IP address
            port: IEC 104 TCP port (default from settings, 2404)
            settings: Link parameters
            on_event: Called with every event; coroutine handlers run as tasks
            originator: Originator address put into every request
        """
        self.settings = settings or IEC104Settings()
        self.host = host
        self.port = port or self.settings.port
        self.on_event = on_event
        self.originator = originator

        self.session: Optional[Session] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._pending: Dict[Tuple[str, int], _PendingRequest] = {}

        # Last value per (common address, IOA)
        self.measurements: Dict[Tuple[int, int], PointEvent] = {}

        # Statistics
        self.stats = {
            'connections': 0,
            'disconnections': 0,
            'commands_sent': 0,
            'interrogations': 0,
            'negative_confirmations': 0,
            'timeouts': 0,
            'errors': 0,
        }

    @property
    def broadcast_address(self) -> int:
        """Global common address addressing every station of the RTU"""
        return (1 << (8 * self.settings.common_address_size)) - 1

    # ==================== CONNECTION ====================

    async def connect(self, start: bool = True):
        """
        Connect to IEC 104 server and start data transfer.

        Raises:
            LinkTimeoutError: TCP connection not established within t0
        """
        try:
            transport = await StreamTransport.connect(self.host, self.port,
                                                      self.settings.t0_timeout_s)
        except asyncio.TimeoutError:
            self.stats['errors'] += 1
            raise LinkTimeoutError(f"T0 expired connecting to {self.host}:{self.port}")
        except OSError as e:
            self.stats['errors'] += 1
            logger.error(f"IEC 104 connection failed to {self.host}:{self.port}: {e}")
            raise

        logger.info(f"IEC 104 connected to {self.host}:{self.port}")
        await self.attach(transport, start=start)

    async def attach(self, transport: Transport, start: bool = True):
        """Run the master over an already open transport"""
        if self.session is not None and not self.session.closed:
            raise RuntimeError("Client already connected")

        self.session = Session(transport, Role.MASTER, self.settings, on_event=self._handle_event)
        self.session.start()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(self.session))
        self.stats['connections'] += 1

        if start:
            await self.session.start_data_transfer()

    async def start_data_transfer(self):
        self._require_session()
        await self.session.start_data_transfer()

    async def stop_data_transfer(self):
        self._require_session()
        await self.session.stop_data_transfer()

    async def disconnect(self):
        """Stop data transfer and close the link"""
        if self.session is None:
            return

        if self.session.is_active():
            try:
                await self.session.stop_data_transfer()
            except (LinkClosedError, LinkTimeoutError) as e:
                logger.warning(f"STOPDT failed: {e}")

        await self.session.close()
        if self._dispatcher is not None:
            await self._dispatcher
        self.stats['disconnections'] += 1
        logger.info(f"IEC 104 disconnected from {self.session.name}")

    def is_healthy(self) -> bool:
        """Check if connection is up with data transfer active"""
        return self.session is not None and self.session.is_active()

    def get_measurement(self, common_address: int, address: int) -> Optional[PointEvent]:
        """Get previously received value of a point"""
        return self.measurements.get((common_address, address))

    # ==================== COMMANDS ====================

    async def send_command(self, common_address: int, address: int, element: Element,
                           type_id: Optional[TypeID] = None,
                           time: Optional[CP56Time2a] = None) -> CommandResult:
        """
        Send a command and wait for its activation confirmation.

        Args:
            common_address: Station address
            address: IOA of the control point
            element: Command element (SingleCommand, DoubleCommand, setpoint...)
            type_id: Command type; derived from the element if omitted
            time: Time tag; a time-tagged type without one gets the current time

        Returns:
            CommandResult (positive or negative confirmation)
        """
        if type_id is None:
            type_id = command_type_for(element, with_time=time is not None)
        if has_time_tag(type_id) and time is None:
            time = CP56Time2a.now()

        asdu = ASDU(type_id, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(address, element, time)])

        self.stats['commands_sent'] += 1
        result = await self._request(_COMMAND, asdu, self.settings.command_timeout_s)
        logger.info(f"Command {type_id.name} CA={common_address} IOA={address} "
                    f"{'confirmed' if result.positive else 'rejected'}")
        return result

    async def select_and_execute(self, common_address: int, address: int, element: Element,
                                 type_id: Optional[TypeID] = None,
                                 time: Optional[CP56Time2a] = None) -> CommandResult:
        """Select, then execute if the selection was confirmed positively"""
        qualifier = getattr(element, 'qualifier', None)
        if qualifier is None:
            raise ValueError(f"{type(element).__name__} has no select/execute qualifier")

        selected = await self.send_command(
            common_address, address,
            replace(element, qualifier=replace(qualifier, select=True)),
            type_id, time)
        if not selected.positive:
            return selected

        return await self.send_command(
            common_address, address,
            replace(element, qualifier=replace(qualifier, select=False)),
            type_id, time)

    async def send_setpoint(self, common_address: int, address: int, value,
                            type_id: TypeID = TypeID.C_SE_NC_1,
                            qualifier: int = 0, select: bool = False,
                            time: Optional[CP56Time2a] = None) -> CommandResult:
        """Set-point command (normalized, scaled or floating point)"""
        if base_type(type_id) not in (TypeID.C_SE_NA_1, TypeID.C_SE_NB_1, TypeID.C_SE_NC_1):
            raise ValueError(f"{type_id.name} is not a set-point command")

        element_type = ELEMENT_TYPES[type_id][0]
        element = element_type(value, elements.SetpointQualifier(qualifier=qualifier))
        if select:
            return await self.select_and_execute(common_address, address, element, type_id, time)
        return await self.send_command(common_address, address, element, type_id, time)

    # ==================== INTERROGATION ====================

    async def general_interrogation(self, common_address: int,
                                    qoi: int = elements.STATION_INTERROGATION,
                                    on_data: Optional[Callable[[ASDU], None]] = None
                                    ) -> InterrogationResult:
        """
        Request all (or one group of) points from a station.

        Completes on activation termination; on_data sees every data ASDU as
        it arrives.
        """
        asdu = ASDU(TypeID.C_IC_NA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, elements.InterrogationQualifier(qoi))])

        self.stats['interrogations'] += 1
        logger.info(f"Interrogation CA={common_address} QOI={qoi}")
        return await self._request(_INTERROGATION, asdu,
                                   self.settings.interrogation_timeout_s, on_data)

    async def counter_interrogation(self, common_address: int,
                                    request: int = elements.CounterRequest.GENERAL,
                                    freeze: int = elements.FreezeCode.READ,
                                    on_data: Optional[Callable[[ASDU], None]] = None
                                    ) -> InterrogationResult:
        """Read, freeze or reset integrated totals"""
        qcc = elements.CounterInterrogationQualifier(request, freeze)
        asdu = ASDU(TypeID.C_CI_NA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, qcc)])

        self.stats['interrogations'] += 1
        logger.info(f"Counter interrogation CA={common_address} request={request} freeze={freeze}")
        return await self._request(_COUNTER_INTERROGATION, asdu,
                                   self.settings.interrogation_timeout_s, on_data)

    # ==================== SYSTEM COMMANDS ====================

    async def read(self, common_address: int, address: int) -> CommandResult:
        """Read one point; the result carries its current element"""
        asdu = ASDU(TypeID.C_RD_NA_1, CauseOfTransmission.REQUEST,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(address, elements.ReadCommand())])
        return await self._request(_COMMAND, asdu, self.settings.command_timeout_s)

    async def clock_synchronization(self, common_address: int,
                                    time: Optional[CP56Time2a] = None) -> CommandResult:
        """Set the station clock (current time if none given)"""
        sync = elements.ClockSynchronization(time or CP56Time2a.now())
        asdu = ASDU(TypeID.C_CS_NA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, sync)])
        return await self._request(_COMMAND, asdu, self.settings.command_timeout_s)

    async def test_command(self, common_address: int) -> CommandResult:
        """C_TS_NA_1 with the fixed test pattern"""
        asdu = ASDU(TypeID.C_TS_NA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, elements.TestCommand())])
        return await self._request(_COMMAND, asdu, self.settings.command_timeout_s)

    async def test_command_with_time(self, common_address: int,
                                     counter: int = elements.TEST_WORD,
                                     time: Optional[CP56Time2a] = None) -> CommandResult:
        """
        C_TS_TA_1: the station echoes the test sequence counter and time tag.

        The time round trip of the confirmation gives the link delay.
        """
        asdu = ASDU(TypeID.C_TS_TA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, elements.TestSequenceCounter(counter),
                                               time or CP56Time2a.now())])
        return await self._request(_COMMAND, asdu, self.settings.command_timeout_s)

    async def delay_acquisition(self, common_address: int,
                                milliseconds: int = 0) -> CommandResult:
        """C_CD_NA_1 activation: start a transmission delay measurement"""
        asdu = ASDU(TypeID.C_CD_NA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, elements.DelayAcquisition(milliseconds))])
        return await self._request(_COMMAND, asdu, self.settings.command_timeout_s)

    async def send_transmission_delay(self, common_address: int, milliseconds: int):
        """Report the measured transmission delay (spontaneous, not confirmed)"""
        self._require_session()
        delay = elements.DelayAcquisition(milliseconds)
        if not delay.valid:
            raise ValueError(f"Transmission delay {milliseconds} ms out of range")
        asdu = ASDU(TypeID.C_CD_NA_1, CauseOfTransmission.SPONTANEOUS,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, delay)])
        await self.session.send(asdu)

    async def reset_process(self, common_address: int,
                            qrp: int = elements.ResetProcessCode.GENERAL) -> CommandResult:
        asdu = ASDU(TypeID.C_RP_NA_1, CauseOfTransmission.ACTIVATION,
                    originator=self.originator,
                    common_address=common_address,
                    objects=[InformationObject(0, elements.ResetProcessQualifier(qrp))])
        return await self._request(_COMMAND, asdu, self.settings.command_timeout_s)

    # ==================== CORRELATION ====================

    def _require_session(self):
        if self.session is None or self.session.closed:
            raise LinkClosedError("Not connected")

    async def _request(self, slot: str, asdu: ASDU, timeout_s: float,
                       on_data: Optional[Callable[[ASDU], None]] = None):
        self._require_session()
        if not self.session.is_active():
            raise NotStartedError("Data transfer not started")

        key = (slot, asdu.common_address)
        if key in self._pending:
            raise CommandBusyError(
                f"{self._pending[key].request.type_id.name} already outstanding "
                f"for CA={asdu.common_address}")

        pending = _PendingRequest(asdu, asyncio.get_running_loop().create_future(), on_data)
        self._pending[key] = pending
        try:
            await self.session.send(asdu)
            return await asyncio.wait_for(pending.future, timeout_s)
        except asyncio.TimeoutError:
            self.stats['timeouts'] += 1
            raise CommandTimeoutError(
                f"No confirmation for {asdu.type_id.name} CA={asdu.common_address} "
                f"within {timeout_s}s")
        finally:
            if self._pending.get(key) is pending:
                del self._pending[key]

    def _find(self, slot: str, common_address: int) -> Optional[_PendingRequest]:
        pending = self._pending.get((slot, common_address))
        if pending is None:
            pending = self._pending.get((slot, self.broadcast_address))
        return pending

    async def _dispatch_loop(self, session: Session):
        """Consume received ASDUs until the session closes"""
        while True:
            try:
                asdu = await session.receive()
            except AsduDecodeError as e:
                self.stats['errors'] += 1
                logger.warning(f"Dropped undecodable ASDU from {session.name}: {e}")
                continue
            except LinkClosedError as e:
                self._fail_pending(e)
                return
            self._dispatch(asdu)

    def _fail_pending(self, error: Exception):
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(error)

    def _dispatch(self, asdu: ASDU):
        if asdu.type_id in MONITOR_TYPES:
            self._on_monitor_data(asdu)
        else:
            self._on_confirmation(asdu)

    def _on_monitor_data(self, asdu: ASDU):
        for event in point_events(asdu):
            self.measurements[(event.common_address, event.address)] = event
            self._notify(event)

        cause = asdu.cause
        if cause.is_interrogation_response:
            pending = self._find(_INTERROGATION, asdu.common_address)
        elif cause.is_counter_response:
            pending = self._find(_COUNTER_INTERROGATION, asdu.common_address)
        elif cause == CauseOfTransmission.REQUEST:
            pending = self._find(_COMMAND, asdu.common_address)
            if (pending is not None and pending.request.type_id == TypeID.C_RD_NA_1
                    and asdu.first_address == pending.address):
                pending.resolve(CommandResult(True, asdu.common_address, pending.address,
                                              asdu.type_id, cause, asdu.objects[0].element))
            return
        else:
            return

        if pending is None:
            logger.debug(f"Unsolicited {cause.name} data: {asdu}")
            return

        pending.asdus.append(asdu)
        if pending.on_data is not None:
            try:
                pending.on_data(asdu)
            except Exception as e:
                logger.error(f"Interrogation data callback error: {e}")

    def _on_confirmation(self, asdu: ASDU):
        if asdu.type_id == TypeID.C_IC_NA_1:
            slot = _INTERROGATION
        elif asdu.type_id == TypeID.C_CI_NA_1:
            slot = _COUNTER_INTERROGATION
        else:
            slot = _COMMAND

        pending = self._find(slot, asdu.common_address)
        if pending is None or not pending.matches(asdu):
            logger.warning(f"Unexpected {asdu}")
            return

        if asdu.negative:
            self.stats['negative_confirmations'] += 1

        if slot == _COMMAND:
            if asdu.cause == CauseOfTransmission.ACTIVATION_TERM:
                logger.debug(f"Activation termination: {asdu}")
                return
            positive = not asdu.negative and asdu.cause in _CONFIRMATIONS
            self._notify(CommandConfirmation(asdu.common_address, pending.address,
                                             asdu.type_id, asdu.cause, positive,
                                             asdu.objects[0].element))
            pending.resolve(CommandResult(positive, asdu.common_address, pending.address,
                                          asdu.type_id, asdu.cause, asdu.objects[0].element,
                                          asdu.objects[0].time))
            return

        qualifier = asdu.objects[0].element
        qualifier_value = getattr(qualifier, 'value', None)
        if qualifier_value is None:
            qualifier_value = qualifier.encode()[0]

        if asdu.cause == CauseOfTransmission.ACTIVATION_CONF and not asdu.negative:
            pending.confirmed = True
            return

        positive = asdu.cause == CauseOfTransmission.ACTIVATION_TERM and not asdu.negative
        self._notify(InterrogationComplete(asdu.common_address, asdu.type_id,
                                           qualifier_value, positive))
        pending.resolve(InterrogationResult(positive, asdu.common_address,
                                            qualifier_value, list(pending.asdus)))

    # ==================== EVENTS ====================

    def _handle_event(self, event: Event):
        if self.on_event is not None:
            return self.on_event(event)

    def _notify(self, event: Event):
        if self.session is not None:
            self.session.emit(event)

    def get_status(self) -> dict:
        return {
            'host': self.host,
            'port': self.port,
            'state': self.session.state.name if self.session else 'DISCONNECTED',
            'pending_requests': len(self._pending),
            'stats': dict(self.stats),
        }
