"""
IEC 60870-5-101/104 Information Element Value Kinds
===================================================

Each information object carries exactly one element. The set of kinds is
closed; every kind knows its own wire size (``SIZE``) and how to encode and
decode itself, so the ASDU codec only has to pick the kind from the type id.

Quality descriptor bits (SIQ / DIQ / QDS):
    bit 7  IV  invalid
    bit 6  NT  not topical
    bit 5  SB  substituted
    bit 4  BL  blocked
    bit 0  OV  overflow (QDS only)

Command qualifiers:
    QOC (inside SCO/DCO/RCO): bit 7 S/E, bits 2-6 QU
    QOS (setpoints):          bit 7 S/E, bits 0-6 QL

All multi-octet values are little-endian.
"""

import struct
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import ClassVar, Optional, Union


NORMALIZED_SCALE = 32768


class DoublePointValue(IntEnum):
    """Double point state (0 and 3 are both indeterminate)"""
    INDETERMINATE_OFF = 0
    OFF = 1
    ON = 2
    INDETERMINATE_ON = 3


class DoubleCommandValue(IntEnum):
    """Valid DCS values; 0 and 3 are not permitted"""
    OFF = 1
    ON = 2


class RegulatingStepValue(IntEnum):
    """Valid RCS values; 0 and 3 are not permitted"""
    LOWER = 1
    HIGHER = 2


class PulseQualifier(IntEnum):
    """QU field of the qualifier of command"""
    NONE = 0
    SHORT_PULSE = 1
    LONG_PULSE = 2
    PERSISTENT = 3


class FreezeCode(IntEnum):
    """FRZ field of the qualifier of counter interrogation"""
    READ = 0
    FREEZE = 1
    FREEZE_AND_RESET = 2
    RESET = 3


class CounterRequest(IntEnum):
    """RQT field of the qualifier of counter interrogation"""
    GROUP_1 = 1
    GROUP_2 = 2
    GROUP_3 = 3
    GROUP_4 = 4
    GENERAL = 5


class ResetProcessCode(IntEnum):
    """Qualifier of reset process command"""
    GENERAL = 1
    TIME_SYNCHRONIZATION = 2  # reset of the time-tagged event buffer


STATION_INTERROGATION = 20
TEST_WORD = 0x55AA


def _normalized_to_raw(value: float) -> int:
    raw = int(round(value * NORMALIZED_SCALE))
    return max(-NORMALIZED_SCALE, min(NORMALIZED_SCALE - 1, raw))


@dataclass(frozen=True)
class CP56Time2a:
    """Seven octet binary time"""
    SIZE: ClassVar[int] = 7

    milliseconds: int = 0      # seconds * 1000 + ms, 0..59999
    minute: int = 0
    hour: int = 0
    day: int = 1
    month: int = 1
    year: int = 0              # 0..99, years since 2000
    weekday: int = 0           # 1..7, 0 if unused
    invalid: bool = False
    summer_time: bool = False

    def encode(self) -> bytes:
        return struct.pack(
            '<HBBBBB',
            self.milliseconds & 0xFFFF,
            (self.minute & 0x3F) | (0x80 if self.invalid else 0),
            (self.hour & 0x1F) | (0x80 if self.summer_time else 0),
            ((self.weekday & 0x07) << 5) | (self.day & 0x1F),
            self.month & 0x0F,
            self.year & 0x7F,
        )

    @classmethod
    def decode(cls, data: bytes) -> 'CP56Time2a':
        ms, minute, hour, day, month, year = struct.unpack('<HBBBBB', data[:7])
        return cls(milliseconds=ms,
                   minute=minute & 0x3F,
                   hour=hour & 0x1F,
                   day=day & 0x1F,
                   month=month & 0x0F,
                   year=year & 0x7F,
                   weekday=(day >> 5) & 0x07,
                   invalid=bool(minute & 0x80),
                   summer_time=bool(hour & 0x80))

    @classmethod
    def from_datetime(cls, dt: datetime, invalid: bool = False) -> 'CP56Time2a':
        return cls(milliseconds=dt.second * 1000 + dt.microsecond // 1000,
                   minute=dt.minute,
                   hour=dt.hour,
                   day=dt.day,
                   month=dt.month,
                   year=dt.year % 100,
                   weekday=dt.isoweekday(),
                   invalid=invalid)

    @classmethod
    def now(cls) -> 'CP56Time2a':
        return cls.from_datetime(datetime.now())

    def to_datetime(self) -> datetime:
        return datetime(2000 + self.year, self.month, self.day,
                        self.hour, self.minute,
                        self.milliseconds // 1000,
                        (self.milliseconds % 1000) * 1000)


@dataclass(frozen=True)
class Quality:
    """Quality descriptor shared by SIQ, DIQ and QDS"""
    invalid: bool = False
    not_topical: bool = False
    substituted: bool = False
    blocked: bool = False
    overflow: bool = False

    def to_byte(self) -> int:
        return ((0x80 if self.invalid else 0) |
                (0x40 if self.not_topical else 0) |
                (0x20 if self.substituted else 0) |
                (0x10 if self.blocked else 0) |
                (0x01 if self.overflow else 0))

    @classmethod
    def from_byte(cls, value: int) -> 'Quality':
        return cls(invalid=bool(value & 0x80),
                   not_topical=bool(value & 0x40),
                   substituted=bool(value & 0x20),
                   blocked=bool(value & 0x10),
                   overflow=bool(value & 0x01))

    @property
    def good(self) -> bool:
        return self.to_byte() == 0


GOOD = Quality()


# ==================== MONITOR DIRECTION ====================

@dataclass(frozen=True)
class SinglePoint:
    """SIQ - single point information with quality"""
    SIZE: ClassVar[int] = 1

    value: bool = False
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return bytes([(self.quality.to_byte() & 0xF0) | (1 if self.value else 0)])

    @classmethod
    def decode(cls, data: bytes) -> 'SinglePoint':
        return cls(bool(data[0] & 0x01), Quality.from_byte(data[0] & 0xF0))


@dataclass(frozen=True)
class DoublePoint:
    """DIQ - double point information with quality"""
    SIZE: ClassVar[int] = 1

    value: DoublePointValue = DoublePointValue.OFF
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return bytes([(self.quality.to_byte() & 0xF0) | (int(self.value) & 0x03)])

    @classmethod
    def decode(cls, data: bytes) -> 'DoublePoint':
        return cls(DoublePointValue(data[0] & 0x03), Quality.from_byte(data[0] & 0xF0))

    @property
    def indeterminate(self) -> bool:
        return self.value in (DoublePointValue.INDETERMINATE_OFF,
                              DoublePointValue.INDETERMINATE_ON)


@dataclass(frozen=True)
class StepPosition:
    """VTI - value with transient state indication (-64..63) and QDS"""
    SIZE: ClassVar[int] = 2

    value: int = 0
    transient: bool = False
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return bytes([(self.value & 0x7F) | (0x80 if self.transient else 0),
                      self.quality.to_byte()])

    @classmethod
    def decode(cls, data: bytes) -> 'StepPosition':
        value = data[0] & 0x7F
        if value & 0x40:
            value -= 0x80
        return cls(value, bool(data[0] & 0x80), Quality.from_byte(data[1]))


@dataclass(frozen=True)
class Bitstring32:
    """BSI - 32 bit string with QDS"""
    SIZE: ClassVar[int] = 5

    value: int = 0
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return struct.pack('<IB', self.value & 0xFFFFFFFF, self.quality.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'Bitstring32':
        value, qds = struct.unpack('<IB', data[:5])
        return cls(value, Quality.from_byte(qds))


@dataclass(frozen=True)
class NormalizedMeasurement:
    """NVA - normalized value in [-1, 1) with QDS"""
    SIZE: ClassVar[int] = 3

    value: float = 0.0
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return struct.pack('<hB', _normalized_to_raw(self.value), self.quality.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'NormalizedMeasurement':
        raw, qds = struct.unpack('<hB', data[:3])
        return cls(raw / NORMALIZED_SCALE, Quality.from_byte(qds))


@dataclass(frozen=True)
class NormalizedMeasurementWithoutQuality:
    """NVA - normalized value without quality descriptor (M_ME_ND_1)"""
    SIZE: ClassVar[int] = 2

    value: float = 0.0

    def encode(self) -> bytes:
        return struct.pack('<h', _normalized_to_raw(self.value))

    @classmethod
    def decode(cls, data: bytes) -> 'NormalizedMeasurementWithoutQuality':
        return cls(struct.unpack('<h', data[:2])[0] / NORMALIZED_SCALE)


@dataclass(frozen=True)
class ScaledMeasurement:
    """SVA - scaled value (int16) with QDS"""
    SIZE: ClassVar[int] = 3

    value: int = 0
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return struct.pack('<hB', self.value, self.quality.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'ScaledMeasurement':
        raw, qds = struct.unpack('<hB', data[:3])
        return cls(raw, Quality.from_byte(qds))


@dataclass(frozen=True)
class FloatMeasurement:
    """IEEE STD 754 short floating point with QDS"""
    SIZE: ClassVar[int] = 5

    value: float = 0.0
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return struct.pack('<fB', self.value, self.quality.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'FloatMeasurement':
        value, qds = struct.unpack('<fB', data[:5])
        return cls(value, Quality.from_byte(qds))


@dataclass(frozen=True)
class BinaryCounter:
    """
    BCR - binary counter reading

    Octets 0-3: signed counter value
    Octet 4:    bits 0-4 sequence number, bit 5 CY, bit 6 CA, bit 7 IV
    """
    SIZE: ClassVar[int] = 5

    value: int = 0
    sequence: int = 0
    carry: bool = False
    adjusted: bool = False
    invalid: bool = False

    def encode(self) -> bytes:
        flags = ((self.sequence & 0x1F) |
                 (0x20 if self.carry else 0) |
                 (0x40 if self.adjusted else 0) |
                 (0x80 if self.invalid else 0))
        return struct.pack('<iB', self.value, flags)

    @classmethod
    def decode(cls, data: bytes) -> 'BinaryCounter':
        value, flags = struct.unpack('<iB', data[:5])
        return cls(value=value,
                   sequence=flags & 0x1F,
                   carry=bool(flags & 0x20),
                   adjusted=bool(flags & 0x40),
                   invalid=bool(flags & 0x80))

    def advance(self, value: Optional[int] = None) -> 'BinaryCounter':
        """Next reading: sequence number wraps modulo 32"""
        return BinaryCounter(value=self.value if value is None else value,
                             sequence=(self.sequence + 1) % 32,
                             carry=self.carry,
                             adjusted=self.adjusted,
                             invalid=self.invalid)


@dataclass(frozen=True)
class PackedSinglePoint:
    """SCD - 16 status bits and 16 change-detected bits with QDS"""
    SIZE: ClassVar[int] = 5

    status: int = 0
    change: int = 0
    quality: Quality = GOOD

    def encode(self) -> bytes:
        return struct.pack('<HHB', self.status & 0xFFFF, self.change & 0xFFFF,
                           self.quality.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'PackedSinglePoint':
        status, change, qds = struct.unpack('<HHB', data[:5])
        return cls(status, change, Quality.from_byte(qds))

    def state(self, point: int) -> bool:
        return bool(self.status & (1 << point))

    def changed(self, point: int) -> bool:
        return bool(self.change & (1 << point))


@dataclass(frozen=True)
class EndOfInitialization:
    """COI - cause of initialization"""
    SIZE: ClassVar[int] = 1

    cause: int = 0              # 0 local power on, 1 local reset, 2 remote reset
    local_change: bool = False

    def encode(self) -> bytes:
        return bytes([(self.cause & 0x7F) | (0x80 if self.local_change else 0)])

    @classmethod
    def decode(cls, data: bytes) -> 'EndOfInitialization':
        return cls(data[0] & 0x7F, bool(data[0] & 0x80))


# ==================== CONTROL DIRECTION ====================

@dataclass(frozen=True)
class CommandQualifier:
    """QOC - select/execute flag and pulse qualifier"""
    select: bool = False
    qualifier: int = PulseQualifier.NONE

    def to_byte(self) -> int:
        return (0x80 if self.select else 0) | ((self.qualifier & 0x1F) << 2)

    @classmethod
    def from_byte(cls, value: int) -> 'CommandQualifier':
        qualifier = (value >> 2) & 0x1F
        if qualifier in PulseQualifier._value2member_map_:
            qualifier = PulseQualifier(qualifier)
        return cls(bool(value & 0x80), qualifier)


EXECUTE = CommandQualifier()
SELECT = CommandQualifier(select=True)


@dataclass(frozen=True)
class SetpointQualifier:
    """QOS - select/execute flag and qualifier of set-point (0..127)"""
    select: bool = False
    qualifier: int = 0

    def to_byte(self) -> int:
        return (0x80 if self.select else 0) | (self.qualifier & 0x7F)

    @classmethod
    def from_byte(cls, value: int) -> 'SetpointQualifier':
        return cls(bool(value & 0x80), value & 0x7F)


@dataclass(frozen=True)
class SingleCommand:
    """SCO - single command state with QOC"""
    SIZE: ClassVar[int] = 1

    value: bool = False
    qualifier: CommandQualifier = EXECUTE

    def encode(self) -> bytes:
        return bytes([self.qualifier.to_byte() | (1 if self.value else 0)])

    @classmethod
    def decode(cls, data: bytes) -> 'SingleCommand':
        return cls(bool(data[0] & 0x01), CommandQualifier.from_byte(data[0]))

    @property
    def valid(self) -> bool:
        return True


@dataclass(frozen=True)
class DoubleCommand:
    """DCO - double command state (1 off, 2 on) with QOC"""
    SIZE: ClassVar[int] = 1

    value: int = DoubleCommandValue.OFF
    qualifier: CommandQualifier = EXECUTE

    def encode(self) -> bytes:
        return bytes([self.qualifier.to_byte() | (int(self.value) & 0x03)])

    @classmethod
    def decode(cls, data: bytes) -> 'DoubleCommand':
        value = data[0] & 0x03
        if value in DoubleCommandValue._value2member_map_:
            value = DoubleCommandValue(value)
        return cls(value, CommandQualifier.from_byte(data[0]))

    @property
    def valid(self) -> bool:
        return self.value in (DoubleCommandValue.OFF, DoubleCommandValue.ON)


@dataclass(frozen=True)
class RegulatingStepCommand:
    """RCO - regulating step command (1 lower, 2 higher) with QOC"""
    SIZE: ClassVar[int] = 1

    value: int = RegulatingStepValue.LOWER
    qualifier: CommandQualifier = EXECUTE

    def encode(self) -> bytes:
        return bytes([self.qualifier.to_byte() | (int(self.value) & 0x03)])

    @classmethod
    def decode(cls, data: bytes) -> 'RegulatingStepCommand':
        value = data[0] & 0x03
        if value in RegulatingStepValue._value2member_map_:
            value = RegulatingStepValue(value)
        return cls(value, CommandQualifier.from_byte(data[0]))

    @property
    def valid(self) -> bool:
        return self.value in (RegulatingStepValue.LOWER, RegulatingStepValue.HIGHER)


@dataclass(frozen=True)
class SetpointNormalized:
    """Set-point command, normalized value with QOS"""
    SIZE: ClassVar[int] = 3

    value: float = 0.0
    qualifier: SetpointQualifier = field(default_factory=SetpointQualifier)

    def encode(self) -> bytes:
        return struct.pack('<hB', _normalized_to_raw(self.value), self.qualifier.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'SetpointNormalized':
        raw, qos = struct.unpack('<hB', data[:3])
        return cls(raw / NORMALIZED_SCALE, SetpointQualifier.from_byte(qos))

    @property
    def valid(self) -> bool:
        return -1.0 <= self.value < 1.0


@dataclass(frozen=True)
class SetpointScaled:
    """Set-point command, scaled value with QOS"""
    SIZE: ClassVar[int] = 3

    value: int = 0
    qualifier: SetpointQualifier = field(default_factory=SetpointQualifier)

    def encode(self) -> bytes:
        return struct.pack('<hB', self.value, self.qualifier.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'SetpointScaled':
        raw, qos = struct.unpack('<hB', data[:3])
        return cls(raw, SetpointQualifier.from_byte(qos))

    @property
    def valid(self) -> bool:
        return True


@dataclass(frozen=True)
class SetpointFloat:
    """Set-point command, short floating point with QOS"""
    SIZE: ClassVar[int] = 5

    value: float = 0.0
    qualifier: SetpointQualifier = field(default_factory=SetpointQualifier)

    def encode(self) -> bytes:
        return struct.pack('<fB', self.value, self.qualifier.to_byte())

    @classmethod
    def decode(cls, data: bytes) -> 'SetpointFloat':
        value, qos = struct.unpack('<fB', data[:5])
        return cls(value, SetpointQualifier.from_byte(qos))

    @property
    def valid(self) -> bool:
        return True


@dataclass(frozen=True)
class Bitstring32Command:
    """Bitstring of 32 bit command (no qualifier, always direct execute)"""
    SIZE: ClassVar[int] = 4

    value: int = 0

    def encode(self) -> bytes:
        return struct.pack('<I', self.value & 0xFFFFFFFF)

    @classmethod
    def decode(cls, data: bytes) -> 'Bitstring32Command':
        return cls(struct.unpack('<I', data[:4])[0])

    @property
    def valid(self) -> bool:
        return True


# ==================== SYSTEM COMMANDS ====================

@dataclass(frozen=True)
class InterrogationQualifier:
    """QOI - 20 station interrogation, 21..36 group 1..16"""
    SIZE: ClassVar[int] = 1

    value: int = STATION_INTERROGATION

    def encode(self) -> bytes:
        return bytes([self.value & 0xFF])

    @classmethod
    def decode(cls, data: bytes) -> 'InterrogationQualifier':
        return cls(data[0])

    @property
    def valid(self) -> bool:
        return STATION_INTERROGATION <= self.value <= STATION_INTERROGATION + 16

    @property
    def group(self) -> Optional[int]:
        """Interrogation group 1..16, None for station interrogation"""
        if self.valid and self.value != STATION_INTERROGATION:
            return self.value - STATION_INTERROGATION
        return None


@dataclass(frozen=True)
class CounterInterrogationQualifier:
    """QCC - bits 0-5 request (RQT), bits 6-7 freeze/reset (FRZ)"""
    SIZE: ClassVar[int] = 1

    request: int = CounterRequest.GENERAL
    freeze: int = FreezeCode.READ

    def encode(self) -> bytes:
        return bytes([((self.freeze & 0x03) << 6) | (self.request & 0x3F)])

    @classmethod
    def decode(cls, data: bytes) -> 'CounterInterrogationQualifier':
        request = data[0] & 0x3F
        if request in CounterRequest._value2member_map_:
            request = CounterRequest(request)
        return cls(request, FreezeCode((data[0] >> 6) & 0x03))

    @property
    def valid(self) -> bool:
        return self.request in CounterRequest._value2member_map_

    @property
    def group(self) -> Optional[int]:
        if self.valid and self.request != CounterRequest.GENERAL:
            return int(self.request)
        return None


@dataclass(frozen=True)
class ReadCommand:
    """C_RD_NA_1 carries no element, only the IOA to read"""
    SIZE: ClassVar[int] = 0

    def encode(self) -> bytes:
        return b''

    @classmethod
    def decode(cls, data: bytes) -> 'ReadCommand':
        return cls()


@dataclass(frozen=True)
class ClockSynchronization:
    """C_CS_NA_1 - the element is the CP56Time2a itself"""
    SIZE: ClassVar[int] = CP56Time2a.SIZE

    time: CP56Time2a = field(default_factory=CP56Time2a)

    def encode(self) -> bytes:
        return self.time.encode()

    @classmethod
    def decode(cls, data: bytes) -> 'ClockSynchronization':
        return cls(CP56Time2a.decode(data))


@dataclass(frozen=True)
class TestCommand:
    """C_TS_NA_1 - fixed test bit pattern 0x55AA"""
    SIZE: ClassVar[int] = 2
    __test__ = False  # not a pytest test class

    pattern: int = TEST_WORD

    def encode(self) -> bytes:
        return struct.pack('<H', self.pattern & 0xFFFF)

    @classmethod
    def decode(cls, data: bytes) -> 'TestCommand':
        return cls(struct.unpack('<H', data[:2])[0])

    @property
    def valid(self) -> bool:
        return self.pattern == TEST_WORD


@dataclass(frozen=True)
class TestSequenceCounter:
    """TSC of C_TS_TA_1, sent with a CP56Time2a time tag and echoed back"""
    SIZE: ClassVar[int] = 2
    __test__ = False  # not a pytest test class

    value: int = TEST_WORD

    def encode(self) -> bytes:
        return struct.pack('<H', self.value)

    @classmethod
    def decode(cls, data: bytes) -> 'TestSequenceCounter':
        return cls(struct.unpack('<H', data[:2])[0])

    @property
    def valid(self) -> bool:
        return 0 <= self.value <= 0xFFFF


@dataclass(frozen=True)
class DelayAcquisition:
    """C_CD_NA_1 - CP16Time2a, transmission delay in milliseconds"""
    SIZE: ClassVar[int] = 2

    milliseconds: int = 0

    def encode(self) -> bytes:
        return struct.pack('<H', self.milliseconds)

    @classmethod
    def decode(cls, data: bytes) -> 'DelayAcquisition':
        return cls(struct.unpack('<H', data[:2])[0])

    @property
    def valid(self) -> bool:
        return 0 <= self.milliseconds <= 59999


@dataclass(frozen=True)
class ResetProcessQualifier:
    """QRP - 1 general reset of process, 2 reset of time-tagged event buffer"""
    SIZE: ClassVar[int] = 1

    value: int = ResetProcessCode.GENERAL

    def encode(self) -> bytes:
        return bytes([self.value & 0xFF])

    @classmethod
    def decode(cls, data: bytes) -> 'ResetProcessQualifier':
        value = data[0]
        if value in ResetProcessCode._value2member_map_:
            value = ResetProcessCode(value)
        return cls(value)

    @property
    def valid(self) -> bool:
        return self.value in ResetProcessCode._value2member_map_


Element = Union[
    SinglePoint, DoublePoint, StepPosition, Bitstring32,
    NormalizedMeasurement, NormalizedMeasurementWithoutQuality,
    ScaledMeasurement, FloatMeasurement, BinaryCounter, PackedSinglePoint,
    EndOfInitialization,
    SingleCommand, DoubleCommand, RegulatingStepCommand,
    SetpointNormalized, SetpointScaled, SetpointFloat, Bitstring32Command,
    InterrogationQualifier, CounterInterrogationQualifier, ReadCommand,
    ClockSynchronization, TestCommand, ResetProcessQualifier,
    DelayAcquisition, TestSequenceCounter,
]


def is_select(element: Element) -> bool:
    """True if a command element carries the select (S/E = 1) flag"""
    qualifier = getattr(element, 'qualifier', None)
    return bool(qualifier is not None and qualifier.select)
