"""
IEC 60870-5-104 APCI Framing
============================

APDU (Application Protocol Data Unit): IEC 104 message frame
    - Start byte 0x68
    - Length of the APDU that follows (4..253)
    - APCI control field (4 bytes)
    - ASDU (I frames only, up to 249 bytes)

Control field formats (the two low bits of octet 1 select the frame type):
    I frame: x0  octets 1-2 = N(S) << 1, octets 3-4 = N(R) << 1
    S frame: 01  octets 1-2 unused,      octets 3-4 = N(R) << 1
    U frame: 11  octet 1 holds exactly one of STARTDT/STOPDT/TESTFR act/con
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from telecontrol.iec104.errors import FrameError


START_BYTE = 0x68
APCI_LENGTH = 4
MAX_APDU_LENGTH = 253
MAX_PAYLOAD_LENGTH = MAX_APDU_LENGTH - APCI_LENGTH
SEQUENCE_MODULO = 1 << 15


class APDUType(IntEnum):
    """APDU message type classification"""
    I_FRAME = 0        # Information frame (data transfer)
    S_FRAME = 1        # Supervisory frame (flow control)
    U_FRAME = 3        # Unnumbered frame (connection control)


class UFrameFunction(IntEnum):
    """U frame function codes (first control octet on the wire)"""
    STARTDT_ACT = 0x07     # Start data transfer (activation)
    STARTDT_CON = 0x0B     # Start data transfer (confirmation)
    STOPDT_ACT = 0x13      # Stop data transfer (activation)
    STOPDT_CON = 0x23      # Stop data transfer (confirmation)
    TESTFR_ACT = 0x43      # Test frame (activation)
    TESTFR_CON = 0x83      # Test frame (confirmation)

    @property
    def is_activation(self) -> bool:
        return self in (UFrameFunction.STARTDT_ACT,
                        UFrameFunction.STOPDT_ACT,
                        UFrameFunction.TESTFR_ACT)

    @property
    def confirmation(self) -> 'UFrameFunction':
        """Matching confirmation for an activation"""
        return UFrameFunction(((self & 0xFC) << 1) | 0x03)


@dataclass
class APCI:
    """Application Protocol Control Information"""
    frame_type: APDUType
    send_sequence: int = 0      # For I frames (15 bits)
    receive_sequence: int = 0   # For I, S frames (15 bits)
    u_function: Optional[UFrameFunction] = None  # For U frames

    def encode(self) -> bytes:
        """Encode the 4 control octets"""
        if self.frame_type == APDUType.I_FRAME:
            return bytes([(self.send_sequence << 1) & 0xFE,
                          (self.send_sequence >> 7) & 0xFF,
                          (self.receive_sequence << 1) & 0xFE,
                          (self.receive_sequence >> 7) & 0xFF])

        if self.frame_type == APDUType.S_FRAME:
            return bytes([0x01, 0x00,
                          (self.receive_sequence << 1) & 0xFE,
                          (self.receive_sequence >> 7) & 0xFF])

        if self.u_function is None:
            raise ValueError("U frame without function")
        return bytes([int(self.u_function), 0x00, 0x00, 0x00])

    @staticmethod
    def decode(data: bytes) -> 'APCI':
        """Decode the 4 control octets"""
        if len(data) < APCI_LENGTH:
            raise FrameError("APCI too short")

        b0, b1, b2, b3 = data[0], data[1], data[2], data[3]
        recv_seq = ((b2 >> 1) & 0x7F) | (b3 << 7)

        if b0 & 0x01 == 0:
            send_seq = ((b0 >> 1) & 0x7F) | (b1 << 7)
            return APCI(APDUType.I_FRAME, send_seq, recv_seq)

        if b0 & 0x03 == 0x01:
            return APCI(APDUType.S_FRAME, 0, recv_seq)

        try:
            function = UFrameFunction(b0)
        except ValueError:
            raise FrameError(f"Unknown U frame function: 0x{b0:02x}")
        return APCI(APDUType.U_FRAME, u_function=function)


@dataclass
class APDU:
    """Application Protocol Data Unit (complete frame)"""
    apci: APCI
    payload: bytes = b''        # Encoded ASDU, I frames only

    @property
    def frame_type(self) -> APDUType:
        return self.apci.frame_type

    def encode(self) -> bytes:
        """Encode complete APDU to bytes"""
        if self.apci.frame_type == APDUType.I_FRAME:
            if not self.payload:
                raise ValueError("I frame without ASDU")
            if len(self.payload) > MAX_PAYLOAD_LENGTH:
                raise ValueError(f"ASDU too long: {len(self.payload)} > {MAX_PAYLOAD_LENGTH}")
        elif self.payload:
            raise ValueError(f"{self.apci.frame_type.name} cannot carry an ASDU")

        result = bytearray()
        result.append(START_BYTE)
        result.append(APCI_LENGTH + len(self.payload))
        result.extend(self.apci.encode())
        result.extend(self.payload)
        return bytes(result)

    @staticmethod
    def decode(data: bytes) -> Tuple[Optional['APDU'], int]:
        """
        Decode one APDU from the front of a buffer.

        Returns (apdu, consumed), or (None, 0) when the buffer does not yet
        hold a complete frame. Raises FrameError for malformed input.
        """
        if not data:
            return None, 0

        if data[0] != START_BYTE:
            raise FrameError(f"Invalid start byte: 0x{data[0]:02x}")

        if len(data) < 2:
            return None, 0

        length = data[1]
        if length < APCI_LENGTH or length > MAX_APDU_LENGTH:
            raise FrameError(f"Invalid APDU length: {length}")

        if len(data) < 2 + length:
            return None, 0

        apci = APCI.decode(data[2:6])
        if apci.frame_type == APDUType.I_FRAME:
            if length == APCI_LENGTH:
                raise FrameError("I frame without ASDU")
        elif length != APCI_LENGTH:
            raise FrameError(f"{apci.frame_type.name} with length {length}")

        return APDU(apci, bytes(data[6:2 + length])), 2 + length

    @staticmethod
    def create_startdt_act() -> 'APDU':
        """Create STARTDT activation frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=UFrameFunction.STARTDT_ACT))

    @staticmethod
    def create_startdt_con() -> 'APDU':
        """Create STARTDT confirmation frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=UFrameFunction.STARTDT_CON))

    @staticmethod
    def create_stopdt_act() -> 'APDU':
        """Create STOPDT activation frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=UFrameFunction.STOPDT_ACT))

    @staticmethod
    def create_stopdt_con() -> 'APDU':
        """Create STOPDT confirmation frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=UFrameFunction.STOPDT_CON))

    @staticmethod
    def create_testfr_act() -> 'APDU':
        """Create TESTFR activation frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=UFrameFunction.TESTFR_ACT))

    @staticmethod
    def create_testfr_con() -> 'APDU':
        """Create TESTFR confirmation frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=UFrameFunction.TESTFR_CON))

    @staticmethod
    def create_u(function: UFrameFunction) -> 'APDU':
        return APDU(APCI(APDUType.U_FRAME, u_function=function))

    @staticmethod
    def create_data(send_seq: int, recv_seq: int, payload: bytes) -> 'APDU':
        """Create I frame with data"""
        return APDU(APCI(APDUType.I_FRAME, send_seq, recv_seq), payload)

    @staticmethod
    def create_supervisory(recv_seq: int) -> 'APDU':
        """Create S frame (flow control)"""
        return APDU(APCI(APDUType.S_FRAME, 0, recv_seq))

    def __str__(self) -> str:
        if self.apci.frame_type == APDUType.I_FRAME:
            return (f"I(ssn={self.apci.send_sequence}, rsn={self.apci.receive_sequence}, "
                    f"{len(self.payload)} bytes)")
        if self.apci.frame_type == APDUType.S_FRAME:
            return f"S(rsn={self.apci.receive_sequence})"
        return f"U({self.apci.u_function.name})"


class FrameBuffer:
    """Accumulates stream chunks and yields complete APDUs"""

    def __init__(self):
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[APDU]:
        """Append received bytes; return every complete frame now available"""
        self._buffer.extend(data)
        frames = []
        while True:
            apdu, consumed = APDU.decode(self._buffer)
            if apdu is None:
                return frames
            del self._buffer[:consumed]
            frames.append(apdu)
