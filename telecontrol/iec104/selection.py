"""
Select-Before-Operate (SBO) bookkeeping for the controlled station

A select command (S/E = 1) arms one selection per common address. The
following execute command must name the same object, type, value and
qualifier before the selection expires; anything else is refused.
"""
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

from telecontrol.iec104.elements import Element
from telecontrol.iec104.messages import TypeID, base_type

logger = logging.getLogger(__name__)


class SelectionState(str, Enum):
    SELECTED = "SELECTED"
    OPERATED = "OPERATED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


def _command_signature(element: Element):
    """Value and qualifier of a command, without the S/E flag"""
    qualifier = getattr(element, 'qualifier', None)
    return (type(element), getattr(element, 'value', None),
            getattr(qualifier, 'qualifier', None))


class Selection:
    def __init__(self, common_address: int, address: int, type_id: TypeID,
                 element: Element, selected_at: float, timeout_s: float):
        self.common_address = common_address
        self.address = address
        self.type_id = type_id
        self.element = element
        self.selected_at = selected_at
        self.expires_at = selected_at + timeout_s
        self.state = SelectionState.SELECTED
        self.operated_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        """Check if selection has expired"""
        return now > self.expires_at

    def time_remaining(self, now: float) -> float:
        """Get seconds remaining before expiration"""
        if self.is_expired(now):
            return 0.0
        return self.expires_at - now

    def matches(self, address: int, type_id: TypeID, element: Element) -> bool:
        return (address == self.address
                and base_type(type_id) == base_type(self.type_id)
                and _command_signature(element) == _command_signature(self.element))

    def to_dict(self, now: float) -> Dict:
        return {
            "common_address": self.common_address,
            "address": self.address,
            "type_id": self.type_id.name,
            "value": getattr(self.element, 'value', None),
            "state": self.state.value,
            "time_remaining_s": round(self.time_remaining(now), 2)
        }


class SelectionManager:
    def __init__(self, timeout_s: float = 10.0, clock: Callable[[], float] = time.monotonic):
        self.timeout_s = timeout_s
        self.clock = clock
        self.selections: Dict[int, Selection] = {}
        self.audit_callback = None

    def set_audit_callback(self, callback):
        """Set callback for audit logging"""
        self.audit_callback = callback

    def select(self, common_address: int, address: int, type_id: TypeID,
               element: Element) -> Selection:
        """Arm a selection, replacing any previous one for the station"""
        selection = Selection(common_address, address, type_id, element,
                              self.clock(), self.timeout_s)
        self.selections[common_address] = selection

        logger.info(f"SELECT CA={common_address} IOA={address} {type_id.name} "
                    f"value={getattr(element, 'value', None)}")
        return selection

    def get(self, common_address: int) -> Optional[Selection]:
        """Current selection of a station"""
        selection = self.selections.get(common_address)

        # Auto-expire if needed
        if (selection and selection.state == SelectionState.SELECTED
                and selection.is_expired(self.clock())):
            selection.state = SelectionState.EXPIRED
            logger.warning(f"Selection CA={common_address} IOA={selection.address} expired")

        return selection

    def operate(self, common_address: int, address: int, type_id: TypeID,
                element: Element) -> Optional[Selection]:
        """
        Consume the selection for a matching execute command

        Returns:
            The operated selection, or None if there is no matching,
            unexpired selection
        """
        selection = self.get(common_address)

        if not selection:
            logger.warning(f"EXECUTE CA={common_address} IOA={address} without selection")
            return None

        if selection.state != SelectionState.SELECTED:
            logger.warning(f"EXECUTE CA={common_address} IOA={address}: selection {selection.state.value}")
            del self.selections[common_address]
            return None

        if not selection.matches(address, type_id, element):
            logger.warning(f"EXECUTE CA={common_address} IOA={address} does not match selection "
                           f"IOA={selection.address} {selection.type_id.name}")
            return None

        selection.state = SelectionState.OPERATED
        selection.operated_at = self.clock()
        del self.selections[common_address]

        logger.info(f"EXECUTE CA={common_address} IOA={address} {type_id.name}")

        # Audit log
        if self.audit_callback:
            self.audit_callback({
                "action": "operate",
                "common_address": common_address,
                "address": address,
                "type_id": type_id.name,
                "value": getattr(element, 'value', None),
                "selected_at": selection.selected_at,
                "operated_at": selection.operated_at,
            })

        return selection

    def cancel(self, common_address: int, address: Optional[int] = None) -> bool:
        """Cancel the selection of a station (deactivation)"""
        selection = self.get(common_address)

        if not selection:
            return False

        if address is not None and selection.address != address:
            return False

        del self.selections[common_address]
        if selection.state == SelectionState.SELECTED:
            selection.state = SelectionState.CANCELLED
            logger.info(f"Selection CA={common_address} IOA={selection.address} cancelled")
            return True

        return False

    def cleanup_expired(self):
        """Remove expired selections from memory"""
        now = self.clock()
        expired = [
            ca for ca, selection in self.selections.items()
            if selection.is_expired(now)
        ]

        for ca in expired:
            del self.selections[ca]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired selections")

    def to_list(self):
        """Armed selections as dicts, expired ones dropped"""
        self.cleanup_expired()
        now = self.clock()
        return [selection.to_dict(now) for selection in self.selections.values()]
