"""
Tests for the ASDU codec and information elements
=================================================

Tests validate:
    - Header layout (VSQ, COT flags, originator, common address size)
    - Every element kind, including independent quality bits
    - Sequence addressing (SQ = 1)
    - Decode errors carrying the parsed header fields
    - Negative mirrors
"""

import unittest
from dataclasses import replace
from datetime import datetime

from telecontrol.iec104 import elements
from telecontrol.iec104.asdu import AsduCodec
from telecontrol.iec104.elements import CP56Time2a, Quality
from telecontrol.iec104.errors import TruncatedAsduError, UnknownCauseError, UnknownTypeError
from telecontrol.iec104.messages import (
    ASDU,
    CauseOfTransmission,
    InformationObject,
    TypeID,
    base_type,
    command_type_for,
    counter_cause,
    interrogation_cause,
    time_tagged_type,
)

COT = CauseOfTransmission
TIME = CP56Time2a(milliseconds=12345, minute=30, hour=14, day=17, month=10, year=26, weekday=6)


def single(type_id, element, address=100, time=None, cause=COT.SPONTANEOUS, **kwargs):
    return ASDU(type_id, cause, common_address=1,
                objects=[InformationObject(address, element, time)], **kwargs)


class TestHeader(unittest.TestCase):
    """Test the data unit identifier"""

    def setUp(self):
        self.codec = AsduCodec()

    def test_float_measurement_bytes(self):
        asdu = single(TypeID.M_ME_NC_1, elements.FloatMeasurement(230.5))

        data = self.codec.encode(asdu)
        self.assertEqual(data[:6], bytes([13, 0x01, 0x03, 0x00, 0x01, 0x00]))
        self.assertEqual(data[6:9], bytes([100, 0, 0]))
        self.assertEqual(len(data), 6 + 3 + 5)
        self.assertEqual(self.codec.decode(data), asdu)

    def test_cot_flags(self):
        asdu = single(TypeID.C_SC_NA_1, elements.SingleCommand(True),
                      cause=COT.ACTIVATION_CONF, negative=True, test=True, originator=7)

        data = self.codec.encode(asdu)
        self.assertEqual(data[2], 0x80 | 0x40 | 7)
        self.assertEqual(data[3], 7)

        decoded = self.codec.decode(data)
        self.assertTrue(decoded.negative)
        self.assertTrue(decoded.test)
        self.assertEqual(decoded.originator, 7)
        self.assertEqual(decoded.cause, COT.ACTIVATION_CONF)

    def test_short_header(self):
        codec = AsduCodec(common_address_size=1, originator_address=False)
        asdu = replace(single(TypeID.M_SP_NA_1, elements.SinglePoint(True)), common_address=200)

        data = codec.encode(asdu)
        self.assertEqual(codec.header_size, 4)
        self.assertEqual(data[:4], bytes([1, 0x01, 0x03, 200]))
        self.assertEqual(codec.decode(data), asdu)

        with self.assertRaises(ValueError):
            codec.encode(replace(asdu, common_address=300))

    def test_common_address_little_endian(self):
        asdu = replace(single(TypeID.M_SP_NA_1, elements.SinglePoint()), common_address=0x1234)
        data = self.codec.encode(asdu)
        self.assertEqual(data[4:6], bytes([0x34, 0x12]))

    def test_invalid_common_address_size(self):
        with self.assertRaises(ValueError):
            AsduCodec(common_address_size=3)


class TestElements(unittest.TestCase):
    """Every element kind through the codec"""

    def setUp(self):
        self.codec = AsduCodec()

    def assertRoundTrip(self, asdu):
        self.assertEqual(self.codec.decode(self.codec.encode(asdu)), asdu)

    def test_quality_bits_independent(self):
        for flag in ('invalid', 'not_topical', 'substituted', 'blocked'):
            quality = Quality(**{flag: True})
            asdu = single(TypeID.M_SP_NA_1, elements.SinglePoint(False, quality))
            decoded = self.codec.decode(self.codec.encode(asdu))
            self.assertEqual(decoded.objects[0].element.quality, quality, flag)

    def test_siq_blocked_not_invalid(self):
        element = elements.SinglePoint(True, Quality(blocked=True, invalid=False))
        data = self.codec.encode(single(TypeID.M_SP_NA_1, element))
        self.assertEqual(data[-1], 0x11)
        self.assertEqual(self.codec.decode(data).objects[0].element, element)

    def test_qds_overflow(self):
        element = elements.ScaledMeasurement(-1234, Quality(overflow=True, not_topical=True))
        self.assertRoundTrip(single(TypeID.M_ME_NB_1, element))

    def test_double_point(self):
        for value in elements.DoublePointValue:
            element = elements.DoublePoint(value, Quality(substituted=True))
            self.assertRoundTrip(single(TypeID.M_DP_NA_1, element))
        self.assertTrue(elements.DoublePoint(elements.DoublePointValue.INDETERMINATE_ON).indeterminate)

    def test_step_position(self):
        for value in (-64, -1, 0, 63):
            self.assertRoundTrip(single(TypeID.M_ST_NA_1, elements.StepPosition(value, transient=True)))

    def test_bitstring(self):
        self.assertRoundTrip(single(TypeID.M_BO_NA_1, elements.Bitstring32(0xDEADBEEF)))

    def test_normalized(self):
        self.assertRoundTrip(single(TypeID.M_ME_NA_1, elements.NormalizedMeasurement(-0.5)))
        self.assertRoundTrip(single(TypeID.M_ME_ND_1, elements.NormalizedMeasurementWithoutQuality(0.25)))

    def test_normalized_clamped(self):
        data = self.codec.encode(single(TypeID.M_ME_NA_1, elements.NormalizedMeasurement(1.0)))
        self.assertEqual(data[9:11], bytes([0xFF, 0x7F]))

    def test_counter(self):
        counter = elements.BinaryCounter(-100000, sequence=31, carry=True, adjusted=False, invalid=True)
        self.assertRoundTrip(single(TypeID.M_IT_NA_1, counter))
        self.assertEqual(counter.advance().sequence, 0)
        self.assertEqual(counter.advance(5).value, 5)

    def test_packed_single_point(self):
        element = elements.PackedSinglePoint(0b1010, 0b0010)
        self.assertRoundTrip(single(TypeID.M_PS_NA_1, element))
        self.assertTrue(element.state(1))
        self.assertFalse(element.state(0))
        self.assertTrue(element.changed(1))

    def test_time_tagged(self):
        self.assertRoundTrip(single(TypeID.M_SP_TB_1, elements.SinglePoint(True), time=TIME))
        self.assertRoundTrip(single(TypeID.M_IT_TB_1, elements.BinaryCounter(42), time=TIME))

    def test_time_tag_required(self):
        with self.assertRaises(ValueError):
            self.codec.encode(single(TypeID.M_ME_TF_1, elements.FloatMeasurement(1.0)))
        with self.assertRaises(ValueError):
            self.codec.encode(single(TypeID.M_ME_NC_1, elements.FloatMeasurement(1.0), time=TIME))

    def test_commands(self):
        select = elements.CommandQualifier(select=True, qualifier=elements.PulseQualifier.LONG_PULSE)
        cases = [
            (TypeID.C_SC_NA_1, elements.SingleCommand(True, select)),
            (TypeID.C_DC_NA_1, elements.DoubleCommand(elements.DoubleCommandValue.ON)),
            (TypeID.C_RC_NA_1, elements.RegulatingStepCommand(elements.RegulatingStepValue.HIGHER)),
            (TypeID.C_SE_NA_1, elements.SetpointNormalized(0.5, elements.SetpointQualifier(True, 3))),
            (TypeID.C_SE_NB_1, elements.SetpointScaled(-300)),
            (TypeID.C_SE_NC_1, elements.SetpointFloat(49.5)),
            (TypeID.C_BO_NA_1, elements.Bitstring32Command(0x0F0F0F0F)),
        ]
        for type_id, element in cases:
            self.assertRoundTrip(single(type_id, element, cause=COT.ACTIVATION))
            self.assertEqual(command_type_for(element), type_id)

    def test_double_command_bytes(self):
        element = elements.DoubleCommand(elements.DoubleCommandValue.ON, elements.SELECT)
        data = self.codec.encode(single(TypeID.C_DC_NA_1, element, cause=COT.ACTIVATION))
        self.assertEqual(data[-1], 0x82)
        self.assertTrue(elements.is_select(element))

    def test_double_command_range(self):
        for value, valid in ((0, False), (1, True), (2, True), (3, False)):
            asdu = single(TypeID.C_DC_NA_1, elements.DoubleCommand(value), cause=COT.ACTIVATION)
            decoded = self.codec.decode(self.codec.encode(asdu))
            self.assertEqual(decoded.objects[0].element.valid, valid)

    def test_time_tagged_command(self):
        asdu = single(TypeID.C_SC_TA_1, elements.SingleCommand(False), time=TIME, cause=COT.ACTIVATION)
        self.assertRoundTrip(asdu)
        self.assertEqual(command_type_for(elements.SingleCommand(), with_time=True), TypeID.C_SC_TA_1)

    def test_system_commands(self):
        cases = [
            (TypeID.C_IC_NA_1, elements.InterrogationQualifier(21)),
            (TypeID.C_CI_NA_1, elements.CounterInterrogationQualifier(
                elements.CounterRequest.GROUP_2, elements.FreezeCode.FREEZE_AND_RESET)),
            (TypeID.C_RD_NA_1, elements.ReadCommand()),
            (TypeID.C_CS_NA_1, elements.ClockSynchronization(TIME)),
            (TypeID.C_TS_NA_1, elements.TestCommand()),
            (TypeID.C_RP_NA_1, elements.ResetProcessQualifier(elements.ResetProcessCode.GENERAL)),
            (TypeID.C_CD_NA_1, elements.DelayAcquisition(1500)),
        ]
        for type_id, element in cases:
            self.assertRoundTrip(single(type_id, element, address=0, cause=COT.ACTIVATION))

    def test_test_command_with_time(self):
        asdu = single(TypeID.C_TS_TA_1, elements.TestSequenceCounter(0x1234), address=0,
                      time=TIME, cause=COT.ACTIVATION)
        data = self.codec.encode(asdu)
        self.assertEqual(len(data), 6 + 3 + 2 + 7)
        self.assertEqual(data[9:11], bytes([0x34, 0x12]))
        self.assertEqual(self.codec.decode(data), asdu)

    def test_delay_acquisition_bytes(self):
        data = self.codec.encode(single(TypeID.C_CD_NA_1, elements.DelayAcquisition(1500),
                                        address=0, cause=COT.SPONTANEOUS))
        self.assertEqual(data[9:], bytes([0xDC, 0x05]))

    def test_read_command_is_address_only(self):
        data = self.codec.encode(single(TypeID.C_RD_NA_1, elements.ReadCommand(), cause=COT.REQUEST))
        self.assertEqual(len(data), 6 + 3)

    def test_qualifiers(self):
        self.assertIsNone(elements.InterrogationQualifier(20).group)
        self.assertEqual(elements.InterrogationQualifier(36).group, 16)
        self.assertFalse(elements.InterrogationQualifier(37).valid)
        self.assertEqual(elements.CounterInterrogationQualifier(3).group, 3)
        self.assertIsNone(elements.CounterInterrogationQualifier().group)
        self.assertFalse(elements.TestCommand(0x1234).valid)
        self.assertFalse(elements.ResetProcessQualifier(9).valid)
        self.assertTrue(elements.DelayAcquisition(59999).valid)
        self.assertFalse(elements.DelayAcquisition(60000).valid)

    def test_end_of_initialization(self):
        element = elements.EndOfInitialization(2, local_change=True)
        self.assertRoundTrip(single(TypeID.M_EI_NA_1, element, address=0, cause=COT.INITIALIZED))


class TestTypeHelpers(unittest.TestCase):

    def test_base_type(self):
        self.assertEqual(base_type(TypeID.M_ME_TF_1), TypeID.M_ME_NC_1)
        self.assertEqual(base_type(TypeID.M_ME_NC_1), TypeID.M_ME_NC_1)
        self.assertEqual(time_tagged_type(TypeID.C_DC_NA_1), TypeID.C_DC_TA_1)

    def test_command_classes(self):
        command = single(TypeID.C_SE_TC_1, elements.SetpointFloat(1.0), time=TIME, cause=COT.ACTIVATION)
        self.assertTrue(command.is_command)
        self.assertFalse(command.is_system_command)

        for type_id, element in [(TypeID.C_CD_NA_1, elements.DelayAcquisition()),
                                 (TypeID.C_TS_TA_1, elements.TestSequenceCounter())]:
            system = single(type_id, element, address=0, cause=COT.ACTIVATION)
            self.assertTrue(system.is_system_command)
            self.assertFalse(system.is_command)

        monitor = single(TypeID.M_SP_NA_1, elements.SinglePoint())
        self.assertFalse(monitor.is_command or monitor.is_system_command)

    def test_response_causes(self):
        self.assertEqual(interrogation_cause(20), COT.INTERROGATED_BY_STATION)
        self.assertEqual(interrogation_cause(36), COT.INTERROGATED_BY_GROUP_16)
        self.assertEqual(counter_cause(elements.CounterRequest.GENERAL), COT.REQUESTED_BY_GENERAL_COUNTER)
        self.assertEqual(counter_cause(elements.CounterRequest.GROUP_4), COT.REQUESTED_BY_GROUP_4_COUNTER)
        self.assertTrue(COT.INTERROGATED_BY_GROUP_3.is_interrogation_response)
        self.assertTrue(COT.REQUESTED_BY_GROUP_1_COUNTER.is_counter_response)
        self.assertFalse(COT.SPONTANEOUS.is_interrogation_response)

    def test_cp56time2a_datetime(self):
        dt = datetime(2026, 10, 17, 14, 30, 12, 345000)
        time = CP56Time2a.from_datetime(dt)
        self.assertEqual(time.to_datetime(), dt)
        self.assertEqual(time.weekday, 6)
        self.assertEqual(CP56Time2a.decode(time.encode()), time)


class TestSequenceAddressing(unittest.TestCase):
    """SQ = 1: one IOA, consecutive objects"""

    def setUp(self):
        self.codec = AsduCodec()
        self.objects = [InformationObject(1000 + i, elements.ScaledMeasurement(i * 10)) for i in range(5)]

    def test_sequence_encoding(self):
        asdu = ASDU(TypeID.M_ME_NB_1, COT.PERIODIC, common_address=3,
                    objects=self.objects, sequence=True)

        data = self.codec.encode(asdu)
        self.assertEqual(data[1], 0x80 | 5)
        self.assertEqual(len(data), 6 + 3 + 5 * 3)

        decoded = self.codec.decode(data)
        self.assertTrue(decoded.sequence)
        self.assertEqual([obj.address for obj in decoded.objects], [1000, 1001, 1002, 1003, 1004])
        self.assertEqual(decoded, asdu)

    def test_sequence_needs_consecutive_addresses(self):
        self.objects[2] = InformationObject(2000, elements.ScaledMeasurement(0))
        asdu = ASDU(TypeID.M_ME_NB_1, COT.PERIODIC, objects=self.objects, sequence=True)
        with self.assertRaises(ValueError):
            self.codec.encode(asdu)

    def test_non_sequence_keeps_addresses(self):
        self.objects[2] = InformationObject(2000, elements.ScaledMeasurement(0))
        asdu = ASDU(TypeID.M_ME_NB_1, COT.PERIODIC, objects=self.objects)
        decoded = self.codec.decode(self.codec.encode(asdu))
        self.assertEqual(decoded.objects[2].address, 2000)


class TestEncodeLimits(unittest.TestCase):

    def setUp(self):
        self.codec = AsduCodec()

    def test_object_count(self):
        with self.assertRaises(ValueError):
            self.codec.encode(ASDU(TypeID.M_SP_NA_1, COT.SPONTANEOUS))

        objects = [InformationObject(i, elements.SinglePoint()) for i in range(128)]
        with self.assertRaises(ValueError):
            self.codec.encode(ASDU(TypeID.M_SP_NA_1, COT.SPONTANEOUS, objects=objects, sequence=True))

    def test_max_length(self):
        # 6 + 30 * (3 + 5) = 246 fits, 31 objects do not
        objects = [InformationObject(i, elements.FloatMeasurement(1.0)) for i in range(31)]
        with self.assertRaises(ValueError):
            self.codec.encode(ASDU(TypeID.M_ME_NC_1, COT.SPONTANEOUS, objects=objects))
        self.assertEqual(len(self.codec.encode(
            ASDU(TypeID.M_ME_NC_1, COT.SPONTANEOUS, objects=objects[:30]))), 246)

    def test_element_kind_mismatch(self):
        with self.assertRaises(ValueError):
            self.codec.encode(single(TypeID.M_SP_NA_1, elements.FloatMeasurement(1.0)))

    def test_ioa_range(self):
        with self.assertRaises(ValueError):
            self.codec.encode(single(TypeID.M_SP_NA_1, elements.SinglePoint(), address=1 << 24))

    def test_value_out_of_range(self):
        cases = [
            (TypeID.M_ME_NB_1, elements.ScaledMeasurement(40000)),
            (TypeID.M_IT_NA_1, elements.BinaryCounter(2 ** 31)),
            (TypeID.C_SE_NB_1, elements.SetpointScaled(-40000)),
        ]
        for type_id, element in cases:
            with self.assertRaises(ValueError):
                self.codec.encode(single(type_id, element, cause=COT.ACTIVATION))


class TestDecodeErrors(unittest.TestCase):
    """Decode failures carry what could be parsed"""

    def setUp(self):
        self.codec = AsduCodec()
        self.data = self.codec.encode(single(TypeID.C_SC_NA_1, elements.SingleCommand(True),
                                             cause=COT.ACTIVATION))

    def test_unknown_type(self):
        data = bytes([99]) + self.data[1:]
        with self.assertRaises(UnknownTypeError) as ctx:
            self.codec.decode(data)
        self.assertEqual(ctx.exception.type_id, 99)
        self.assertEqual(ctx.exception.common_address, 1)
        self.assertEqual(ctx.exception.raw, data)

    def test_unknown_cause(self):
        data = self.data[:2] + bytes([42]) + self.data[3:]
        with self.assertRaises(UnknownCauseError) as ctx:
            self.codec.decode(data)
        self.assertEqual(ctx.exception.type_id, TypeID.C_SC_NA_1)

    def test_truncated(self):
        with self.assertRaises(TruncatedAsduError):
            self.codec.decode(self.data[:-1])
        with self.assertRaises(TruncatedAsduError):
            self.codec.decode(self.data + b'\x00')
        with self.assertRaises(TruncatedAsduError):
            self.codec.decode(self.data[:4])

    def test_zero_objects(self):
        data = self.data[:1] + bytes([0x00]) + self.data[2:6]
        with self.assertRaises(TruncatedAsduError):
            self.codec.decode(data)

    def test_negative_mirror(self):
        data = bytes([99]) + self.data[1:]
        mirrored = self.codec.negative_mirror(data, COT.UNKNOWN_TYPE)
        self.assertEqual(mirrored[2], 0x40 | 44)
        self.assertEqual(mirrored[:2], data[:2])
        self.assertEqual(mirrored[3:], data[3:])

    def test_mirror(self):
        asdu = self.codec.decode(self.data)
        confirmation = asdu.mirror(COT.ACTIVATION_CONF)
        self.assertEqual(confirmation.cause, COT.ACTIVATION_CONF)
        self.assertEqual(confirmation.objects, asdu.objects)
        self.assertFalse(confirmation.negative)
        self.assertEqual(asdu.cause, COT.ACTIVATION)


if __name__ == '__main__':
    unittest.main()
