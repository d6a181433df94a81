"""
IEC 60870-5-104 Session Supervisor
==================================

One Session drives one link over a byte-stream transport.

Tasks:
    reader     - turns transport bytes into APDUs and posts them to the inbox
    supervisor - the only task that touches sequence numbers, the send window
                 and timers; it waits on the inbox with a timeout equal to the
                 next timer deadline, so frames, expired timers and application
                 requests are all handled in one place

Fatal conditions (session ends, exactly one link-lost event):
    - transport EOF or error
    - malformed frame
    - unexpected N(S), or N(R) acknowledging unsent frames
    - I frame received while data transfer is stopped
    - T1 expiry on an I frame or a U activation

Usage:
    session = Session(transport, role=Role.MASTER, settings=settings)
    session.start()
    await session.start_data_transfer()
    await session.send(asdu)
    asdu = await session.receive()
    await session.close()
"""

import asyncio
import inspect
import logging
from collections import deque
from enum import Enum
from typing import Deque, Optional, Tuple, Union

from telecontrol.config import IEC104Settings
from telecontrol.iec104.apci import APDU, APDUType, FrameBuffer, UFrameFunction
from telecontrol.iec104.asdu import AsduCodec
from telecontrol.iec104.connection import ConnectionState, ConnectionStateMachine
from telecontrol.iec104.errors import (
    AsduDecodeError,
    FrameError,
    IEC104Error,
    LinkClosedError,
    LinkTimeoutError,
    NotStartedError,
)
from telecontrol.iec104.events import EventHandler, LinkStateChanged
from telecontrol.iec104.messages import ASDU
from telecontrol.iec104.transport import Transport


class Role(Enum):
    """Which end of the link this session plays"""
    MASTER = 'master'    # controlling station, sends STARTDT/STOPDT
    SLAVE = 'slave'      # controlled station (RTU)


# Inbox message kinds
_FRAME = 'frame'
_FAILURE = 'failure'
_SEND = 'send'
_CONTROL = 'control'
_CLOSE = 'close'

_CLOSED = object()


class Session:
    """
    IEC 104 link supervisor.

    All protocol state lives in a ConnectionStateMachine owned by the
    supervisor task; public coroutines only post requests to its inbox.
    """

    def __init__(self, transport: Transport, role: Role = Role.MASTER,
                 settings: Optional[IEC104Settings] = None,
                 on_event: Optional[EventHandler] = None,
                 codec: Optional[AsduCodec] = None):
        self.transport = transport
        self.role = role
        self.settings = settings or IEC104Settings()
        self.on_event = on_event
        self.codec = codec or AsduCodec(self.settings.common_address_size,
                                        self.settings.originator_address)
        self.name = transport.name

        self.logger = logging.getLogger(f"IEC104[{self.name}]")

        self.fsm = ConnectionStateMachine(
            remote_address=self.name,
            k=self.settings.k_window,
            w=self.settings.w_window,
            t1=self.settings.t1_timeout_s,
            t2=self.settings.t2_timeout_s,
            t3=self.settings.t3_timeout_s,
        )

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._received: asyncio.Queue = asyncio.Queue()
        self._outbox: Deque[Tuple[bytes, asyncio.Future]] = deque()
        self._control_requests: Deque[Tuple[UFrameFunction, asyncio.Future]] = deque()
        self._control_waiter: Optional[asyncio.Future] = None

        self._supervisor: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._handler_tasks = set()
        self.closed = False
        self.close_reason: Optional[str] = None

        self.stats = {
            'frames_sent': 0,
            'frames_received': 0,
            'i_frames_sent': 0,
            'i_frames_received': 0,
            's_frames_sent': 0,
            'testfr_sent': 0,
            'decode_errors': 0,
        }

    # ==================== PUBLIC API ====================

    @property
    def state(self) -> ConnectionState:
        return self.fsm.state

    def is_active(self) -> bool:
        return self.fsm.is_active()

    def start(self):
        """Spawn reader and supervisor tasks (state CONNECTED_STOPPED)"""
        if self._supervisor is not None:
            raise RuntimeError("Session already started")
        if self.closed:
            raise LinkClosedError(self.close_reason or "session closed")

        self.fsm.clock = asyncio.get_running_loop().time
        self.fsm.on_connected()
        self.logger.info(f"Session opened ({self.role.value})")
        self.emit(LinkStateChanged(self.name, self.fsm.state))

        self._reader = asyncio.create_task(self._read_loop())
        self._supervisor = asyncio.create_task(self._supervise())

    async def start_data_transfer(self):
        """Send STARTDT act and wait for STARTDT con (master)"""
        if self.fsm.is_active():
            return
        await self._control(UFrameFunction.STARTDT_ACT)

    async def stop_data_transfer(self):
        """Send STOPDT act and wait for STOPDT con (master)"""
        if not self.fsm.is_active():
            return
        await self._control(UFrameFunction.STOPDT_ACT)

    async def send(self, asdu: Union[ASDU, bytes]):
        """
        Queue an ASDU as an I frame; returns once it has been written.

        Waits while k frames are unacknowledged. Raises NotStartedError if
        data transfer is not active and LinkClosedError if the link dies.
        """
        payload = asdu if isinstance(asdu, (bytes, bytearray)) else self.codec.encode(asdu)
        if self.closed:
            raise LinkClosedError(self.close_reason or "session closed")
        if not self.fsm.is_active() or self.fsm.stopping:
            raise NotStartedError("Data transfer not started")

        waiter = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((_SEND, bytes(payload), waiter))
        await waiter

    async def receive(self) -> ASDU:
        """
        Next decoded ASDU from the peer.

        Raises AsduDecodeError for an ASDU that could not be decoded (the
        session keeps running) and LinkClosedError once the session is closed.
        """
        item = await self._received.get()
        if item is _CLOSED:
            self._received.put_nowait(_CLOSED)
            raise LinkClosedError(self.close_reason or "session closed")
        if isinstance(item, AsduDecodeError):
            raise item
        return item

    async def close(self):
        """Close the session and its transport"""
        if self._supervisor is not None and not self._supervisor.done():
            self._inbox.put_nowait((_CLOSE, "closed locally", None))
            await asyncio.shield(self._supervisor)
        else:
            self._shutdown("closed locally")
        await self.transport.wait_closed()

    async def wait_closed(self):
        """Wait until the session has ended for any reason"""
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)

    # ==================== REQUESTS ====================

    async def _control(self, function: UFrameFunction):
        if self.closed:
            raise LinkClosedError(self.close_reason or "session closed")
        if self._supervisor is None:
            raise RuntimeError("Session not started")

        waiter = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((_CONTROL, function, waiter))
        await waiter

    # ==================== TASKS ====================

    async def _read_loop(self):
        """Transport bytes -> APDUs -> supervisor inbox"""
        buffer = FrameBuffer()
        try:
            while True:
                data = await self.transport.read()
                if not data:
                    self._inbox.put_nowait((_FAILURE, LinkClosedError("connection closed by peer"), None))
                    return
                for apdu in buffer.feed(data):
                    self._inbox.put_nowait((_FRAME, apdu, None))
        except FrameError as e:
            self._inbox.put_nowait((_FAILURE, e, None))
        except (ConnectionError, OSError) as e:
            self._inbox.put_nowait((_FAILURE, LinkClosedError(f"transport error: {e}"), None))

    async def _supervise(self):
        reason = None
        error: Optional[Exception] = None
        try:
            while True:
                await self._service()
                item = await self._next_item()
                if item is None:
                    continue

                kind, payload, waiter = item
                if kind == _FRAME:
                    await self._on_frame(payload)
                elif kind == _SEND:
                    if self.fsm.is_active() and not self.fsm.stopping:
                        self._outbox.append((payload, waiter))
                    elif not waiter.done():
                        waiter.set_exception(NotStartedError("Data transfer not started"))
                elif kind == _CONTROL:
                    self._control_requests.append((payload, waiter))
                elif kind == _FAILURE:
                    raise payload
                elif kind == _CLOSE:
                    reason = payload
                    break
        except (IEC104Error, ConnectionError, OSError) as e:
            reason = str(e)
            error = e
            self.logger.error(f"Link lost: {e}")
        finally:
            self._shutdown(reason or "supervisor stopped", error)

    async def _next_item(self):
        """Next inbox item, or None once the nearest timer deadline passes"""
        if not self._inbox.empty():
            return self._inbox.get_nowait()

        deadline = self.fsm.next_deadline()
        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(self._inbox.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def _service(self):
        """Timers, pending U activations, S frames and the send window"""
        expired = self.fsm.t1_expired()
        if expired:
            raise LinkTimeoutError(f"T1 expired: {expired}")

        if self.fsm.pending_u is None and self._control_requests:
            function, waiter = self._control_requests.popleft()
            if not waiter.done():
                await self._write_u(function)
                self._control_waiter = waiter

        if self.fsm.need_testfr():
            self.stats['testfr_sent'] += 1
            await self._write_u(UFrameFunction.TESTFR_ACT)

        while self._outbox and self.fsm.can_send():
            payload, waiter = self._outbox.popleft()
            if waiter.done():
                continue
            send_seq, recv_seq = self.fsm.on_data_sent()
            await self._write(APDU.create_data(send_seq, recv_seq, payload))
            self.stats['i_frames_sent'] += 1
            waiter.set_result(send_seq)

        if self.fsm.need_supervisory():
            await self._write_supervisory()

        await self._confirm_stop()

    # ==================== RECEIVE ====================

    async def _on_frame(self, apdu: APDU):
        self.stats['frames_received'] += 1
        self.logger.debug(f"RX {apdu}")
        self.fsm.on_frame_received()

        if apdu.frame_type == APDUType.I_FRAME:
            self.fsm.on_i_frame(apdu.apci.send_sequence, apdu.apci.receive_sequence)
            self.stats['i_frames_received'] += 1
            self._deliver(apdu.payload)

        elif apdu.frame_type == APDUType.S_FRAME:
            self.fsm.on_ack(apdu.apci.receive_sequence)

        else:
            await self._on_u_frame(apdu.apci.u_function)

    async def _on_u_frame(self, function: UFrameFunction):
        if function == UFrameFunction.TESTFR_ACT:
            await self._write_u(UFrameFunction.TESTFR_CON)

        elif function == UFrameFunction.STARTDT_ACT:
            if self.role != Role.SLAVE:
                self.logger.warning("Ignoring STARTDT_ACT received by master")
                return
            self.fsm.on_startdt_act()
            await self._write_u(UFrameFunction.STARTDT_CON)
            self.logger.info("Data transfer started by peer")
            self.emit(LinkStateChanged(self.name, self.fsm.state))

        elif function == UFrameFunction.STOPDT_ACT:
            if self.role != Role.SLAVE:
                self.logger.warning("Ignoring STOPDT_ACT received by master")
                return
            if self.fsm.unacknowledged_received:
                await self._write_supervisory()
            self.fsm.on_stopdt_act()
            self._fail_outbox(NotStartedError("Data transfer stopped"))
            if not self.fsm.stop_confirmable():
                self.logger.info(f"STOPDT_CON held until {len(self.fsm.unacked)} I frames are acknowledged")
            await self._confirm_stop()

        elif self.fsm.on_u_confirmation(function):
            if function == UFrameFunction.TESTFR_CON:
                self.logger.debug("TESTFR confirmed")
                return
            self.logger.info(f"{function.name} received, state {self.fsm.state.name}")
            if function == UFrameFunction.STOPDT_CON:
                self._fail_outbox(NotStartedError("Data transfer stopped"))
            self.emit(LinkStateChanged(self.name, self.fsm.state))
            waiter, self._control_waiter = self._control_waiter, None
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

        else:
            self.logger.warning(f"Unexpected {function.name}")

    async def _confirm_stop(self):
        if not self.fsm.stop_confirmable():
            return
        self.fsm.on_stop_confirmed()
        await self._write_u(UFrameFunction.STOPDT_CON)
        self.logger.info("Data transfer stopped by peer")
        self.emit(LinkStateChanged(self.name, self.fsm.state))

    def _deliver(self, payload: bytes):
        try:
            asdu = self.codec.decode(payload)
        except AsduDecodeError as e:
            self.stats['decode_errors'] += 1
            self.logger.warning(f"Cannot decode ASDU: {e}")
            self._received.put_nowait(e)
            return
        self.logger.debug(f"ASDU {asdu}")
        self._received.put_nowait(asdu)

    # ==================== SEND ====================

    async def _write(self, apdu: APDU):
        self.logger.debug(f"TX {apdu}")
        self.transport.write(apdu.encode())
        await self.transport.drain()
        self.stats['frames_sent'] += 1

    async def _write_u(self, function: UFrameFunction):
        self.fsm.on_u_sent(function)
        await self._write(APDU.create_u(function))

    async def _write_supervisory(self):
        recv_seq = self.fsm.on_supervisory_sent()
        self.stats['s_frames_sent'] += 1
        await self._write(APDU.create_supervisory(recv_seq))

    # ==================== SHUTDOWN ====================

    def _fail_outbox(self, error: Exception):
        while self._outbox:
            _, waiter = self._outbox.popleft()
            if not waiter.done():
                waiter.set_exception(error)

    def _shutdown(self, reason: str, error: Optional[Exception] = None):
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self.fsm.disconnect()

        if self._reader is not None:
            self._reader.cancel()
        self.transport.close()

        closed_error = LinkClosedError(reason)
        self._fail_outbox(closed_error)
        while not self._inbox.empty():
            kind, _, waiter = self._inbox.get_nowait()
            if waiter is not None and not waiter.done():
                waiter.set_exception(closed_error)
        pending = list(self._control_requests)
        self._control_requests.clear()
        if self._control_waiter is not None:
            pending.append((None, self._control_waiter))
            self._control_waiter = None
        for _, waiter in pending:
            if not waiter.done():
                waiter.set_exception(error if isinstance(error, LinkTimeoutError) else closed_error)

        self._received.put_nowait(_CLOSED)
        self.logger.info(f"Session closed: {reason}")
        self.emit(LinkStateChanged(self.name, ConnectionState.DISCONNECTED, reason))

    def emit(self, event):
        """Deliver an event to the handler; coroutine handlers run as tasks"""
        if self.on_event is None:
            return
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
        except Exception as e:
            self.logger.error(f"Event handler error: {e}")

    def __str__(self):
        return str(self.fsm)
