"""
IEC 104 Error Taxonomy
======================

Fatal (session is dropped, one link-lost event is emitted):
    FrameError        - bad start octet, bad length, unknown U function
    SequenceError     - unexpected N(S), or N(R) acknowledging unsent frames
    LinkTimeoutError  - T1 expired on an I-frame or a U-frame activation

Recoverable (session keeps running):
    AsduDecodeError   - unknown type / unknown cause / truncated payload
    CommandTimeoutError, CommandBusyError - reported to one caller only

Negative confirmations are not errors; they are returned as results.
"""

from typing import Optional


class IEC104Error(Exception):
    """Base class for all IEC 104 engine errors"""


class FrameError(IEC104Error, ValueError):
    """Malformed APCI frame on the wire"""


class SequenceError(IEC104Error):
    """Send/receive sequence numbers out of sync"""


class LinkTimeoutError(IEC104Error, TimeoutError):
    """T1 expired without acknowledgement or confirmation"""


class LinkClosedError(IEC104Error, ConnectionError):
    """Session closed while an operation was pending"""


class NotStartedError(IEC104Error):
    """Data transfer is not active (STARTDT not confirmed)"""


class CommandTimeoutError(IEC104Error, TimeoutError):
    """No confirmation for a command or interrogation within its timeout"""


class CommandBusyError(IEC104Error):
    """Another control request is outstanding for the same common address"""


class AsduDecodeError(IEC104Error, ValueError):
    """
    ASDU could not be decoded.

    Carries whatever header fields were parsed so a slave can still send a
    negative mirror of the request.
    """

    def __init__(self, message: str, raw: bytes = b'',
                 type_id: Optional[int] = None,
                 common_address: Optional[int] = None):
        super().__init__(message)
        self.raw = bytes(raw)
        self.type_id = type_id
        self.common_address = common_address


class UnknownTypeError(AsduDecodeError):
    """Type identifier not supported"""


class UnknownCauseError(AsduDecodeError):
    """Cause of transmission code not defined"""


class TruncatedAsduError(AsduDecodeError):
    """Payload shorter (or longer) than the declared objects"""
