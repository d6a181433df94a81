"""
Application events delivered by the IEC 104 engine.

Every event handler receives one of the dataclasses below. Monitor-direction
data is split by element kind: status (single/double point, step position,
bitstrings), measured values and integrated totals.
"""

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Union

from telecontrol.iec104 import elements
from telecontrol.iec104.connection import ConnectionState
from telecontrol.iec104.elements import CP56Time2a, Element
from telecontrol.iec104.messages import ASDU, CauseOfTransmission, TypeID


@dataclass
class LinkStateChanged:
    """Session state transition; state DISCONNECTED means the link is lost"""
    peer: str
    state: ConnectionState
    reason: Optional[str] = None

    @property
    def lost(self) -> bool:
        return self.state == ConnectionState.DISCONNECTED


@dataclass
class PointEvent:
    """One information object reported by the peer"""
    common_address: int
    address: int
    type_id: TypeID
    cause: CauseOfTransmission
    element: Element
    time: Optional[CP56Time2a] = None

    @property
    def value(self):
        return getattr(self.element, 'value', None)


@dataclass
class StatusChanged(PointEvent):
    """Single/double point, step position, bitstring or packed status"""


@dataclass
class MeasuredValue(PointEvent):
    """Normalized, scaled or floating point measurement"""


@dataclass
class CounterReport(PointEvent):
    """Integrated total (binary counter reading)"""


@dataclass
class ProcessEvent(PointEvent):
    """End of initialization, clock synchronization or reset process"""


@dataclass
class CommandConfirmation:
    """Activation confirmation for a command, positive or negative"""
    common_address: int
    address: int
    type_id: TypeID
    cause: CauseOfTransmission
    positive: bool
    element: Optional[Element] = None


@dataclass
class InterrogationComplete:
    """Activation termination of a (counter) interrogation"""
    common_address: int
    type_id: TypeID
    qualifier: int
    positive: bool = True


Event = Union[LinkStateChanged, StatusChanged, MeasuredValue, CounterReport,
              ProcessEvent, CommandConfirmation, InterrogationComplete]
EventHandler = Callable[[Event], Any]


_STATUS_KINDS = (elements.SinglePoint, elements.DoublePoint, elements.StepPosition,
                 elements.Bitstring32, elements.PackedSinglePoint)
_MEASURED_KINDS = (elements.NormalizedMeasurement, elements.ScaledMeasurement,
                   elements.FloatMeasurement, elements.NormalizedMeasurementWithoutQuality)


def point_events(asdu: ASDU) -> Iterator[PointEvent]:
    """Split a monitor-direction ASDU into one event per information object"""
    for obj in asdu.objects:
        if isinstance(obj.element, _STATUS_KINDS):
            event_type = StatusChanged
        elif isinstance(obj.element, _MEASURED_KINDS):
            event_type = MeasuredValue
        elif isinstance(obj.element, elements.BinaryCounter):
            event_type = CounterReport
        else:
            event_type = ProcessEvent
        yield event_type(asdu.common_address, obj.address, asdu.type_id,
                         asdu.cause, obj.element, obj.time)
