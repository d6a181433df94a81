"""
IEC 60870-5-104 Connection State Machine
========================================

Bookkeeping for one IEC 104 link, independent of I/O. The asyncio session
supervisor feeds it events and asks it what to do next; all timestamps come
from the injected clock so the machine can be driven by a fake clock in tests.

Connection states:
    DISCONNECTED      - No transport
    CONNECTED_STOPPED - Transport open, data transfer not active
    CONNECTED_STARTED - Data transfer active (STARTDT confirmed)

Sequence:
    1. Transport opened (CONNECTED_STOPPED)
    2. Master sends STARTDT_ACT, both sides reset sequence numbers
    3. Slave responds STARTDT_CON (CONNECTED_STARTED)
    4. Data exchange
    5. Master sends STOPDT_ACT, slave acknowledges pending I frames
    6. Slave responds STOPDT_CON (CONNECTED_STOPPED)
    7. Transport closed (DISCONNECTED)

Flow control:
    k  - at most k unacknowledged I frames may be outstanding
    w  - acknowledge at the latest after w received I frames
    T1 - an I frame or U activation must be acknowledged within t1
    T2 - acknowledge received I frames at the latest after t2
    T3 - send TESTFR_ACT after t3 without receiving anything
"""

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

from telecontrol.iec104.apci import SEQUENCE_MODULO, UFrameFunction
from telecontrol.iec104.errors import SequenceError


class ConnectionState(Enum):
    """IEC 104 connection states"""
    DISCONNECTED = 0
    CONNECTED_STOPPED = 1
    CONNECTED_STARTED = 2


def _distance(older: int, newer: int) -> int:
    return (newer - older) % SEQUENCE_MODULO


@dataclass
class ConnectionStateMachine:
    """
    IEC 104 connection state machine

    Attributes:
        state: Current connection state
        send_sequence: V(S), next N(S) to send
        ack_sequence: V(A), oldest sent I frame not yet acknowledged
        recv_sequence: V(R), next N(S) expected from the peer
        recv_acked: last N(R) sent to the peer
        unacked: (N(S), send time) of every unacknowledged sent I frame
        recv_pending_since: arrival time of the oldest unacknowledged received I frame
        last_activity: time anything was last received (T3)
        pending_u: U activation waiting for its confirmation
        stop_requested: STOPDT_ACT received, STOPDT_CON held until sent I frames are acknowledged
    """

    remote_address: str = ''
    k: int = 12
    w: int = 8
    t1: float = 15.0
    t2: float = 10.0
    t3: float = 20.0
    clock: Callable[[], float] = time.monotonic

    state: ConnectionState = ConnectionState.DISCONNECTED
    send_sequence: int = 0
    ack_sequence: int = 0
    recv_sequence: int = 0
    recv_acked: int = 0
    unacked: Deque[Tuple[int, float]] = field(default_factory=deque)
    recv_pending_since: Optional[float] = None
    last_activity: float = 0.0
    pending_u: Optional[UFrameFunction] = None
    pending_u_since: Optional[float] = None
    stop_requested: bool = False

    # ==================== LIFECYCLE ====================

    def on_connected(self):
        """Handle transport established"""
        self.state = ConnectionState.CONNECTED_STOPPED
        self.reset_sequences()
        self.pending_u = None
        self.pending_u_since = None
        self.last_activity = self.clock()

    def disconnect(self):
        """Mark connection as disconnected"""
        self.state = ConnectionState.DISCONNECTED
        self.stop_requested = False
        self.pending_u = None
        self.pending_u_since = None
        self.unacked.clear()
        self.recv_pending_since = None

    def reset_sequences(self):
        """All sequence state back to zero (STARTDT activation)"""
        self.stop_requested = False
        self.send_sequence = 0
        self.ack_sequence = 0
        self.recv_sequence = 0
        self.recv_acked = 0
        self.unacked.clear()
        self.recv_pending_since = None

    def is_active(self) -> bool:
        """Check if connection is in active data transfer state"""
        return self.state == ConnectionState.CONNECTED_STARTED

    def is_connected(self) -> bool:
        return self.state != ConnectionState.DISCONNECTED

    # ==================== U FRAMES ====================

    def on_u_sent(self, function: UFrameFunction):
        """Record an outgoing U frame; activations arm T1"""
        if function.is_activation:
            if function == UFrameFunction.STARTDT_ACT:
                self.reset_sequences()
            self.pending_u = function
            self.pending_u_since = self.clock()

    def on_u_confirmation(self, function: UFrameFunction) -> bool:
        """
        Handle a received confirmation.

        Returns:
            True if it confirms the pending activation, False if unexpected
        """
        if self.pending_u is None or self.pending_u.confirmation != function:
            return False

        self.pending_u = None
        self.pending_u_since = None
        if function == UFrameFunction.STARTDT_CON:
            self.state = ConnectionState.CONNECTED_STARTED
        elif function == UFrameFunction.STOPDT_CON:
            self.state = ConnectionState.CONNECTED_STOPPED
        return True

    def on_startdt_act(self):
        """Handle STARTDT activation from the peer (slave side)"""
        self.reset_sequences()
        self.state = ConnectionState.CONNECTED_STARTED

    def on_stopdt_act(self):
        """Handle STOPDT activation from the peer (slave side)"""
        self.stop_requested = True

    def stop_confirmable(self) -> bool:
        """STOPDT_CON may be sent: stop requested and every sent I frame acknowledged"""
        return self.stop_requested and not self.unacked

    def on_stop_confirmed(self):
        self.stop_requested = False
        self.state = ConnectionState.CONNECTED_STOPPED

    @property
    def stopping(self) -> bool:
        """No new I frames: own STOPDT_ACT pending or the peer's being honoured"""
        return self.pending_u == UFrameFunction.STOPDT_ACT or self.stop_requested

    # ==================== RECEIVE ====================

    def on_frame_received(self):
        """Any received frame restarts T3"""
        self.last_activity = self.clock()

    def on_i_frame(self, send_seq: int, recv_seq: int):
        """Handle a received I frame; raises SequenceError on a gap"""
        if not self.is_active():
            raise SequenceError("I frame received while data transfer is stopped")

        if send_seq != self.recv_sequence:
            raise SequenceError(
                f"Unexpected N(S)={send_seq}, expected {self.recv_sequence}")

        self.recv_sequence = (self.recv_sequence + 1) % SEQUENCE_MODULO
        if self.recv_pending_since is None:
            self.recv_pending_since = self.clock()
        self.on_ack(recv_seq)

    def on_ack(self, recv_seq: int) -> int:
        """
        Handle N(R) from an I or S frame.

        Returns:
            Number of sent I frames newly acknowledged
        """
        count = _distance(self.ack_sequence, recv_seq)
        if count > len(self.unacked):
            raise SequenceError(
                f"N(R)={recv_seq} acknowledges unsent frames "
                f"(V(A)={self.ack_sequence}, V(S)={self.send_sequence})")

        for _ in range(count):
            self.unacked.popleft()
        self.ack_sequence = recv_seq
        return count

    # ==================== SEND ====================

    def can_send(self) -> bool:
        """May an I frame be sent now"""
        return (self.is_active() and not self.stopping
                and len(self.unacked) < self.k)

    def on_data_sent(self) -> Tuple[int, int]:
        """
        Allocate sequence numbers for an outgoing I frame.

        Returns:
            (N(S), N(R)) to put in the frame
        """
        send_seq = self.send_sequence
        self.unacked.append((send_seq, self.clock()))
        self.send_sequence = (self.send_sequence + 1) % SEQUENCE_MODULO
        # the I frame carries N(R), which acknowledges everything received
        self.recv_acked = self.recv_sequence
        self.recv_pending_since = None
        return send_seq, self.recv_sequence

    def on_supervisory_sent(self) -> int:
        """Returns N(R) for an outgoing S frame"""
        self.recv_acked = self.recv_sequence
        self.recv_pending_since = None
        return self.recv_sequence

    @property
    def unacknowledged_received(self) -> int:
        return _distance(self.recv_acked, self.recv_sequence)

    # ==================== TIMERS ====================

    def need_supervisory(self) -> bool:
        """Must an S frame be sent now (w reached or T2 expired)"""
        pending = self.unacknowledged_received
        if pending == 0:
            return False
        if pending >= self.w:
            return True
        return self.clock() - self.recv_pending_since >= self.t2

    def t1_expired(self) -> Optional[str]:
        """
        Check T1 on sent I frames and pending U activation

        Returns:
            Description of what timed out, None if nothing did
        """
        now = self.clock()
        if self.unacked and now - self.unacked[0][1] >= self.t1:
            return f"I frame N(S)={self.unacked[0][0]} not acknowledged"
        if self.pending_u is not None and now - self.pending_u_since >= self.t1:
            return f"{self.pending_u.name} not confirmed"
        return None

    def need_testfr(self) -> bool:
        """Check if we should send TESTFR_ACT (T3 idle)"""
        if not self.is_connected() or self.pending_u is not None:
            return False
        return self.clock() - self.last_activity >= self.t3

    def next_deadline(self) -> Optional[float]:
        """Earliest clock time at which some timer needs attention"""
        deadlines = []
        if self.unacked:
            deadlines.append(self.unacked[0][1] + self.t1)
        if self.pending_u is not None:
            deadlines.append(self.pending_u_since + self.t1)
        elif self.is_connected():
            deadlines.append(self.last_activity + self.t3)
        if self.recv_pending_since is not None:
            deadlines.append(self.recv_pending_since + self.t2)
        return min(deadlines) if deadlines else None

    def __str__(self):
        return (f"IEC104[{self.remote_address}] state={self.state.name} "
                f"V(S)={self.send_sequence} V(A)={self.ack_sequence} "
                f"V(R)={self.recv_sequence} unacked={len(self.unacked)} "
                f"pending={self.pending_u.name if self.pending_u else None}")
