"""
IEC 60870-5-104 ASDU Structures and Type Codes
==============================================

ASDU (Application Service Data Unit):
    Byte 0:    Type identification
    Byte 1:    Variable structure qualifier (bit 7 = SQ, bits 0-6 = number of objects)
    Byte 2:    Cause of transmission (bit 7 = test, bit 6 = negative, bits 0-5 = cause)
    Byte 3:    Originator address (optional)
    Byte 4-5:  Common address of ASDU (1 or 2 bytes, little-endian)
    Then:      Information objects (IOA 3 bytes little-endian + element [+ CP56Time2a])

With SQ = 1 only the first object carries an IOA; the following objects
occupy consecutive addresses.
"""

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Dict, List, Optional, Tuple, Type

from telecontrol.iec104 import elements
from telecontrol.iec104.elements import CP56Time2a, Element


MAX_ASDU_LENGTH = 249
MAX_OBJECTS = 127
IOA_SIZE = 3
MAX_IOA = 0xFFFFFF


class TypeID(IntEnum):
    """IEC 60870-5-101/104 Type Identification"""

    # Process information in monitor direction
    M_SP_NA_1 = 1      # Single point information
    M_DP_NA_1 = 3      # Double point information
    M_ST_NA_1 = 5      # Step position information
    M_BO_NA_1 = 7      # Bitstring of 32 bits
    M_ME_NA_1 = 9      # Measured value, normalized
    M_ME_NB_1 = 11     # Measured value, scaled
    M_ME_NC_1 = 13     # Measured value, short floating point
    M_IT_NA_1 = 15     # Integrated totals
    M_PS_NA_1 = 20     # Packed single point with status change detection
    M_ME_ND_1 = 21     # Measured value, normalized without quality
    M_SP_TB_1 = 30     # Single point with CP56Time2a
    M_DP_TB_1 = 31     # Double point with CP56Time2a
    M_ST_TB_1 = 32     # Step position with CP56Time2a
    M_BO_TB_1 = 33     # Bitstring with CP56Time2a
    M_ME_TD_1 = 34     # Normalized with CP56Time2a
    M_ME_TE_1 = 35     # Scaled with CP56Time2a
    M_ME_TF_1 = 36     # Short floating point with CP56Time2a
    M_IT_TB_1 = 37     # Integrated totals with CP56Time2a

    # Process information in control direction
    C_SC_NA_1 = 45     # Single command
    C_DC_NA_1 = 46     # Double command
    C_RC_NA_1 = 47     # Regulating step command
    C_SE_NA_1 = 48     # Set point command, normalized
    C_SE_NB_1 = 49     # Set point command, scaled
    C_SE_NC_1 = 50     # Set point command, short floating point
    C_BO_NA_1 = 51     # Bitstring of 32 bits command
    C_SC_TA_1 = 58     # Single command with CP56Time2a
    C_DC_TA_1 = 59     # Double command with CP56Time2a
    C_RC_TA_1 = 60     # Regulating step command with CP56Time2a
    C_SE_TA_1 = 61     # Set point normalized with CP56Time2a
    C_SE_TB_1 = 62     # Set point scaled with CP56Time2a
    C_SE_TC_1 = 63     # Set point short floating point with CP56Time2a
    C_BO_TA_1 = 64     # Bitstring command with CP56Time2a

    # System information in monitor direction
    M_EI_NA_1 = 70     # End of initialization

    # System information in control direction
    C_IC_NA_1 = 100    # Interrogation command
    C_CI_NA_1 = 101    # Counter interrogation command
    C_RD_NA_1 = 102    # Read command
    C_CS_NA_1 = 103    # Clock synchronization command
    C_TS_NA_1 = 104    # Test command
    C_RP_NA_1 = 105    # Reset process command
    C_CD_NA_1 = 106    # Delay acquisition command
    C_TS_TA_1 = 107    # Test command with CP56Time2a


class CauseOfTransmission(IntEnum):
    """Cause Of Transmission codes"""

    NOT_USED = 0
    PERIODIC = 1                  # Periodic, cyclic
    BACKGROUND = 2                # Background scan
    SPONTANEOUS = 3               # Spontaneous
    INITIALIZED = 4               # Initialized
    REQUEST = 5                   # Request or requested
    ACTIVATION = 6
    ACTIVATION_CONF = 7
    DEACTIVATION = 8
    DEACTIVATION_CONF = 9
    ACTIVATION_TERM = 10
    RETURN_INFO_REMOTE = 11       # Return information caused by a remote command
    RETURN_INFO_LOCAL = 12        # Return information caused by a local command
    FILE_TRANSFER = 13
    INTERROGATED_BY_STATION = 20
    INTERROGATED_BY_GROUP_1 = 21
    INTERROGATED_BY_GROUP_2 = 22
    INTERROGATED_BY_GROUP_3 = 23
    INTERROGATED_BY_GROUP_4 = 24
    INTERROGATED_BY_GROUP_5 = 25
    INTERROGATED_BY_GROUP_6 = 26
    INTERROGATED_BY_GROUP_7 = 27
    INTERROGATED_BY_GROUP_8 = 28
    INTERROGATED_BY_GROUP_9 = 29
    INTERROGATED_BY_GROUP_10 = 30
    INTERROGATED_BY_GROUP_11 = 31
    INTERROGATED_BY_GROUP_12 = 32
    INTERROGATED_BY_GROUP_13 = 33
    INTERROGATED_BY_GROUP_14 = 34
    INTERROGATED_BY_GROUP_15 = 35
    INTERROGATED_BY_GROUP_16 = 36
    REQUESTED_BY_GENERAL_COUNTER = 37
    REQUESTED_BY_GROUP_1_COUNTER = 38
    REQUESTED_BY_GROUP_2_COUNTER = 39
    REQUESTED_BY_GROUP_3_COUNTER = 40
    REQUESTED_BY_GROUP_4_COUNTER = 41
    UNKNOWN_TYPE = 44             # Unknown type identification
    UNKNOWN_CAUSE = 45            # Unknown cause of transmission
    UNKNOWN_COMMON_ADDRESS = 46   # Unknown common address of ASDU
    UNKNOWN_IOA = 47              # Unknown information object address

    @property
    def is_interrogation_response(self) -> bool:
        return 20 <= self <= 36

    @property
    def is_counter_response(self) -> bool:
        return 37 <= self <= 41


def interrogation_cause(qoi: int) -> CauseOfTransmission:
    """Cause used for data returned by an interrogation with this QOI"""
    return CauseOfTransmission(qoi)


def counter_cause(request: int) -> CauseOfTransmission:
    """Cause used for counters returned by a counter interrogation request"""
    if request == elements.CounterRequest.GENERAL:
        return CauseOfTransmission.REQUESTED_BY_GENERAL_COUNTER
    return CauseOfTransmission(CauseOfTransmission.REQUESTED_BY_GENERAL_COUNTER + request)


# Type id -> (element kind, carries CP56Time2a)
ELEMENT_TYPES: Dict[TypeID, Tuple[Type, bool]] = {
    TypeID.M_SP_NA_1: (elements.SinglePoint, False),
    TypeID.M_DP_NA_1: (elements.DoublePoint, False),
    TypeID.M_ST_NA_1: (elements.StepPosition, False),
    TypeID.M_BO_NA_1: (elements.Bitstring32, False),
    TypeID.M_ME_NA_1: (elements.NormalizedMeasurement, False),
    TypeID.M_ME_NB_1: (elements.ScaledMeasurement, False),
    TypeID.M_ME_NC_1: (elements.FloatMeasurement, False),
    TypeID.M_IT_NA_1: (elements.BinaryCounter, False),
    TypeID.M_PS_NA_1: (elements.PackedSinglePoint, False),
    TypeID.M_ME_ND_1: (elements.NormalizedMeasurementWithoutQuality, False),
    TypeID.M_SP_TB_1: (elements.SinglePoint, True),
    TypeID.M_DP_TB_1: (elements.DoublePoint, True),
    TypeID.M_ST_TB_1: (elements.StepPosition, True),
    TypeID.M_BO_TB_1: (elements.Bitstring32, True),
    TypeID.M_ME_TD_1: (elements.NormalizedMeasurement, True),
    TypeID.M_ME_TE_1: (elements.ScaledMeasurement, True),
    TypeID.M_ME_TF_1: (elements.FloatMeasurement, True),
    TypeID.M_IT_TB_1: (elements.BinaryCounter, True),
    TypeID.C_SC_NA_1: (elements.SingleCommand, False),
    TypeID.C_DC_NA_1: (elements.DoubleCommand, False),
    TypeID.C_RC_NA_1: (elements.RegulatingStepCommand, False),
    TypeID.C_SE_NA_1: (elements.SetpointNormalized, False),
    TypeID.C_SE_NB_1: (elements.SetpointScaled, False),
    TypeID.C_SE_NC_1: (elements.SetpointFloat, False),
    TypeID.C_BO_NA_1: (elements.Bitstring32Command, False),
    TypeID.C_SC_TA_1: (elements.SingleCommand, True),
    TypeID.C_DC_TA_1: (elements.DoubleCommand, True),
    TypeID.C_RC_TA_1: (elements.RegulatingStepCommand, True),
    TypeID.C_SE_TA_1: (elements.SetpointNormalized, True),
    TypeID.C_SE_TB_1: (elements.SetpointScaled, True),
    TypeID.C_SE_TC_1: (elements.SetpointFloat, True),
    TypeID.C_BO_TA_1: (elements.Bitstring32Command, True),
    TypeID.M_EI_NA_1: (elements.EndOfInitialization, False),
    TypeID.C_IC_NA_1: (elements.InterrogationQualifier, False),
    TypeID.C_CI_NA_1: (elements.CounterInterrogationQualifier, False),
    TypeID.C_RD_NA_1: (elements.ReadCommand, False),
    TypeID.C_CS_NA_1: (elements.ClockSynchronization, False),
    TypeID.C_TS_NA_1: (elements.TestCommand, False),
    TypeID.C_RP_NA_1: (elements.ResetProcessQualifier, False),
    TypeID.C_CD_NA_1: (elements.DelayAcquisition, False),
    TypeID.C_TS_TA_1: (elements.TestSequenceCounter, True),
}

COMMAND_TYPES = frozenset(t for t in TypeID if 45 <= t <= 64)
SYSTEM_COMMAND_TYPES = frozenset(t for t in TypeID if 100 <= t <= 107)
MONITOR_TYPES = frozenset(t for t in TypeID if t < 45 or t == TypeID.M_EI_NA_1)

# Time-tagged type -> the same information without the time tag
_UNTAGGED = {
    TypeID.M_SP_TB_1: TypeID.M_SP_NA_1,
    TypeID.M_DP_TB_1: TypeID.M_DP_NA_1,
    TypeID.M_ST_TB_1: TypeID.M_ST_NA_1,
    TypeID.M_BO_TB_1: TypeID.M_BO_NA_1,
    TypeID.M_ME_TD_1: TypeID.M_ME_NA_1,
    TypeID.M_ME_TE_1: TypeID.M_ME_NB_1,
    TypeID.M_ME_TF_1: TypeID.M_ME_NC_1,
    TypeID.M_IT_TB_1: TypeID.M_IT_NA_1,
    TypeID.C_SC_TA_1: TypeID.C_SC_NA_1,
    TypeID.C_DC_TA_1: TypeID.C_DC_NA_1,
    TypeID.C_RC_TA_1: TypeID.C_RC_NA_1,
    TypeID.C_SE_TA_1: TypeID.C_SE_NA_1,
    TypeID.C_SE_TB_1: TypeID.C_SE_NB_1,
    TypeID.C_SE_TC_1: TypeID.C_SE_NC_1,
    TypeID.C_BO_TA_1: TypeID.C_BO_NA_1,
}
_TAGGED = {untagged: tagged for tagged, untagged in _UNTAGGED.items()}


def base_type(type_id: TypeID) -> TypeID:
    """Strip the time tag: M_SP_TB_1 -> M_SP_NA_1, C_SC_TA_1 -> C_SC_NA_1"""
    return _UNTAGGED.get(type_id, type_id)


def time_tagged_type(type_id: TypeID) -> TypeID:
    """Time-tagged counterpart of a type id (itself if there is none)"""
    return _TAGGED.get(type_id, type_id)


def has_time_tag(type_id: TypeID) -> bool:
    return ELEMENT_TYPES[type_id][1]


_DEFAULT_COMMAND_TYPES = {
    elements.SingleCommand: TypeID.C_SC_NA_1,
    elements.DoubleCommand: TypeID.C_DC_NA_1,
    elements.RegulatingStepCommand: TypeID.C_RC_NA_1,
    elements.SetpointNormalized: TypeID.C_SE_NA_1,
    elements.SetpointScaled: TypeID.C_SE_NB_1,
    elements.SetpointFloat: TypeID.C_SE_NC_1,
    elements.Bitstring32Command: TypeID.C_BO_NA_1,
}


def command_type_for(element: Element, with_time: bool = False) -> TypeID:
    """Pick the command type id that carries this element kind"""
    try:
        type_id = _DEFAULT_COMMAND_TYPES[type(element)]
    except KeyError:
        raise ValueError(f"{type(element).__name__} is not a command element")
    return time_tagged_type(type_id) if with_time else type_id


@dataclass
class InformationObject:
    """One information object: address, element value and optional time tag"""
    address: int
    element: Element
    time: Optional[CP56Time2a] = None


@dataclass
class ASDU:
    """Application Service Data Unit"""
    type_id: TypeID
    cause: CauseOfTransmission
    originator: int = 0          # Originator address (0 = not used)
    common_address: int = 1      # Common address of ASDU (station)
    objects: List[InformationObject] = None
    negative: bool = False       # P/N bit
    test: bool = False           # T bit
    sequence: bool = False       # SQ bit of the VSQ

    def __post_init__(self):
        if self.objects is None:
            self.objects = []

    @property
    def is_command(self) -> bool:
        return self.type_id in COMMAND_TYPES

    @property
    def is_system_command(self) -> bool:
        return self.type_id in SYSTEM_COMMAND_TYPES

    @property
    def first_address(self) -> Optional[int]:
        return self.objects[0].address if self.objects else None

    def mirror(self, cause: CauseOfTransmission, negative: bool = False) -> 'ASDU':
        """Copy of this ASDU with another cause (confirmations, terminations)"""
        return replace(self, cause=cause, negative=negative,
                       objects=list(self.objects))

    def __str__(self) -> str:
        sign = '-' if self.negative else '+'
        return (f"{self.type_id.name} {self.cause.name}{sign} "
                f"CA={self.common_address} objects={len(self.objects)}")
