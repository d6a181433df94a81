"""
ASDU codec: ASDU <-> bytes

The header layout depends on two link parameters that both ends must agree
on: the size of the common address (1 or 2 octets) and whether the cause of
transmission is followed by an originator address octet.
"""

import struct

from telecontrol.iec104.elements import CP56Time2a
from telecontrol.iec104.errors import (
    TruncatedAsduError,
    UnknownCauseError,
    UnknownTypeError,
)
from telecontrol.iec104.messages import (
    ASDU,
    ELEMENT_TYPES,
    IOA_SIZE,
    MAX_ASDU_LENGTH,
    MAX_IOA,
    MAX_OBJECTS,
    CauseOfTransmission,
    InformationObject,
    TypeID,
)


class AsduCodec:
    """Encodes and decodes ASDUs for one link parameter set"""

    def __init__(self, common_address_size: int = 2, originator_address: bool = True):
        if common_address_size not in (1, 2):
            raise ValueError(f"common_address_size must be 1 or 2, got {common_address_size}")
        self.common_address_size = common_address_size
        self.originator_address = originator_address

    @property
    def header_size(self) -> int:
        return 3 + (1 if self.originator_address else 0) + self.common_address_size

    @property
    def max_common_address(self) -> int:
        return (1 << (8 * self.common_address_size)) - 1

    @property
    def broadcast_address(self) -> int:
        """Global common address: all stations of the peer"""
        return self.max_common_address

    def encode(self, asdu: ASDU) -> bytes:
        """Encode ASDU to bytes, raising ValueError if it cannot be sent"""
        count = len(asdu.objects)
        if not 1 <= count <= MAX_OBJECTS:
            raise ValueError(f"ASDU must carry 1..{MAX_OBJECTS} objects, got {count}")

        try:
            element_type, has_time = ELEMENT_TYPES[TypeID(asdu.type_id)]
        except (KeyError, ValueError):
            raise ValueError(f"Unsupported type id: {asdu.type_id}")

        if not 0 <= asdu.common_address <= self.max_common_address:
            raise ValueError(f"Common address {asdu.common_address} out of range")

        if asdu.sequence:
            first = asdu.objects[0].address
            for offset, obj in enumerate(asdu.objects):
                if obj.address != first + offset:
                    raise ValueError("Sequence addressing needs consecutive addresses")

        result = bytearray()
        result.append(int(asdu.type_id))
        result.append((0x80 if asdu.sequence else 0) | count)
        result.append((0x80 if asdu.test else 0) |
                      (0x40 if asdu.negative else 0) |
                      (int(asdu.cause) & 0x3F))
        if self.originator_address:
            result.append(asdu.originator & 0xFF)
        result.extend(asdu.common_address.to_bytes(self.common_address_size, 'little'))

        for index, obj in enumerate(asdu.objects):
            if not isinstance(obj.element, element_type):
                raise ValueError(f"{asdu.type_id.name} carries {element_type.__name__}, "
                                 f"got {type(obj.element).__name__}")
            if has_time and obj.time is None:
                raise ValueError(f"{asdu.type_id.name} requires a time tag")
            if not has_time and obj.time is not None:
                raise ValueError(f"{asdu.type_id.name} has no time tag")

            if index == 0 or not asdu.sequence:
                if not 0 <= obj.address <= MAX_IOA:
                    raise ValueError(f"Information object address {obj.address} out of range")
                result.extend(obj.address.to_bytes(IOA_SIZE, 'little'))
            try:
                result.extend(obj.element.encode())
            except struct.error as e:
                raise ValueError(f"IOA {obj.address}: {type(obj.element).__name__} out of range ({e})")
            if has_time:
                result.extend(obj.time.encode())

        if len(result) > MAX_ASDU_LENGTH:
            raise ValueError(f"ASDU too long: {len(result)} > {MAX_ASDU_LENGTH}")
        return bytes(result)

    def decode(self, data: bytes) -> ASDU:
        """Decode ASDU from bytes, raising an AsduDecodeError subclass on failure"""
        data = bytes(data)
        if len(data) < self.header_size:
            raise TruncatedAsduError(f"ASDU header too short ({len(data)} bytes)", raw=data,
                                     type_id=data[0] if data else None)

        type_raw = data[0]
        vsq = data[1]
        cot = data[2]
        pos = 3
        originator = 0
        if self.originator_address:
            originator = data[pos]
            pos += 1
        common_address = int.from_bytes(data[pos:pos + self.common_address_size], 'little')
        pos += self.common_address_size

        try:
            type_id = TypeID(type_raw)
            element_type, has_time = ELEMENT_TYPES[type_id]
        except (KeyError, ValueError):
            raise UnknownTypeError(f"Unknown type id: {type_raw}", raw=data,
                                   type_id=type_raw, common_address=common_address)

        try:
            cause = CauseOfTransmission(cot & 0x3F)
        except ValueError:
            raise UnknownCauseError(f"Unknown cause of transmission: {cot & 0x3F}", raw=data,
                                    type_id=type_raw, common_address=common_address)

        count = vsq & 0x7F
        sequence = bool(vsq & 0x80)
        if count == 0:
            raise TruncatedAsduError("ASDU without information objects", raw=data,
                                     type_id=type_raw, common_address=common_address)

        value_size = element_type.SIZE + (CP56Time2a.SIZE if has_time else 0)
        if sequence:
            expected = self.header_size + IOA_SIZE + count * value_size
        else:
            expected = self.header_size + count * (IOA_SIZE + value_size)
        if len(data) != expected:
            raise TruncatedAsduError(
                f"{type_id.name}: {count} objects need {expected} bytes, got {len(data)}",
                raw=data, type_id=type_raw, common_address=common_address)

        objects = []
        address = 0
        for index in range(count):
            if index == 0 or not sequence:
                address = int.from_bytes(data[pos:pos + IOA_SIZE], 'little')
                pos += IOA_SIZE
            else:
                address += 1
            element = element_type.decode(data[pos:pos + element_type.SIZE])
            pos += element_type.SIZE
            time = None
            if has_time:
                time = CP56Time2a.decode(data[pos:pos + CP56Time2a.SIZE])
                pos += CP56Time2a.SIZE
            objects.append(InformationObject(address, element, time))

        return ASDU(type_id=type_id,
                    cause=cause,
                    originator=originator,
                    common_address=common_address,
                    objects=objects,
                    negative=bool(cot & 0x40),
                    test=bool(cot & 0x80),
                    sequence=sequence)

    def negative_mirror(self, raw: bytes, cause: CauseOfTransmission) -> bytes:
        """Received ASDU sent back unchanged except for a negative COT"""
        if len(raw) < 3:
            raise ValueError("ASDU too short to mirror")
        mirrored = bytearray(raw)
        mirrored[2] = (mirrored[2] & 0x80) | 0x40 | (int(cause) & 0x3F)
        return bytes(mirrored)
