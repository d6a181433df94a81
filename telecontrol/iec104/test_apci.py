"""
Tests for IEC 104 APCI framing
==============================

Tests validate:
    - U frame wire bytes and activation/confirmation pairing
    - I and S frame sequence numbers, including the 15 bit boundaries
    - Partial frames and stream reassembly
    - Malformed frames
"""

import unittest

from telecontrol.iec104.apci import (
    APCI,
    APDU,
    MAX_APDU_LENGTH,
    SEQUENCE_MODULO,
    APDUType,
    FrameBuffer,
    UFrameFunction,
)
from telecontrol.iec104.errors import FrameError


class TestUFrames(unittest.TestCase):
    """Test unnumbered (U) frames"""

    def test_startdt_act_bytes(self):
        self.assertEqual(APDU.create_startdt_act().encode(), bytes([0x68, 0x04, 0x07, 0x00, 0x00, 0x00]))

    def test_u_frame_wire_values(self):
        expected = [
            (APDU.create_startdt_con(), 0x0B),
            (APDU.create_stopdt_act(), 0x13),
            (APDU.create_stopdt_con(), 0x23),
            (APDU.create_testfr_act(), 0x43),
            (APDU.create_testfr_con(), 0x83),
        ]
        for apdu, octet in expected:
            self.assertEqual(apdu.encode()[2], octet)

    def test_confirmation_pairs(self):
        self.assertEqual(UFrameFunction.STARTDT_ACT.confirmation, UFrameFunction.STARTDT_CON)
        self.assertEqual(UFrameFunction.STOPDT_ACT.confirmation, UFrameFunction.STOPDT_CON)
        self.assertEqual(UFrameFunction.TESTFR_ACT.confirmation, UFrameFunction.TESTFR_CON)
        self.assertTrue(UFrameFunction.TESTFR_ACT.is_activation)
        self.assertFalse(UFrameFunction.TESTFR_CON.is_activation)

    def test_testfr_act_decode(self):
        data = APDU.create_testfr_act().encode()

        decoded, consumed = APDU.decode(data)
        self.assertEqual(decoded.frame_type, APDUType.U_FRAME)
        self.assertEqual(decoded.apci.u_function, UFrameFunction.TESTFR_ACT)
        self.assertEqual(consumed, len(data))

    def test_unknown_u_function(self):
        with self.assertRaises(FrameError):
            APDU.decode(bytes([0x68, 0x04, 0x33, 0x00, 0x00, 0x00]))

    def test_u_frame_with_payload_rejected(self):
        with self.assertRaises(ValueError):
            APDU(APDU.create_testfr_act().apci, b'\x01').encode()


class TestNumberedFrames(unittest.TestCase):
    """Test information (I) and supervisory (S) frames"""

    def test_supervisory_frame(self):
        data = APDU.create_supervisory(123).encode()
        self.assertEqual(data[:4], bytes([0x68, 0x04, 0x01, 0x00]))

        decoded, _ = APDU.decode(data)
        self.assertEqual(decoded.frame_type, APDUType.S_FRAME)
        self.assertEqual(decoded.apci.receive_sequence, 123)

    def test_information_frame(self):
        payload = bytes([0x0D, 0x01, 0x03, 0x00, 0x01, 0x00, 0x01, 0x00, 0x00,
                         0x00, 0x80, 0x66, 0x43, 0x00])
        data = APDU.create_data(5, 7, payload).encode()

        self.assertEqual(data[1], 4 + len(payload))
        self.assertEqual(data[2:6], bytes([0x0A, 0x00, 0x0E, 0x00]))

        decoded, consumed = APDU.decode(data)
        self.assertEqual(decoded.frame_type, APDUType.I_FRAME)
        self.assertEqual(decoded.apci.send_sequence, 5)
        self.assertEqual(decoded.apci.receive_sequence, 7)
        self.assertEqual(decoded.payload, payload)
        self.assertEqual(consumed, len(data))

    def test_sequence_number_boundaries(self):
        """0 and 2^15 - 1 survive encoding"""
        for send_seq, recv_seq in ((0, 0), (SEQUENCE_MODULO - 1, 0),
                                   (0, SEQUENCE_MODULO - 1),
                                   (SEQUENCE_MODULO - 1, SEQUENCE_MODULO - 1), (128, 255)):
            apdu = APDU.create_data(send_seq, recv_seq, b'\x01')
            decoded, _ = APDU.decode(apdu.encode())
            self.assertEqual(decoded, apdu)

    def test_max_sequence_control_octets(self):
        apci = APCI(APDUType.I_FRAME, SEQUENCE_MODULO - 1, SEQUENCE_MODULO - 1)
        self.assertEqual(apci.encode(), bytes([0xFE, 0xFF, 0xFE, 0xFF]))

    def test_i_frame_without_payload_rejected(self):
        with self.assertRaises(ValueError):
            APDU.create_data(0, 0, b'').encode()
        with self.assertRaises(FrameError):
            APDU.decode(bytes([0x68, 0x04, 0x00, 0x00, 0x00, 0x00]))

    def test_payload_too_long(self):
        with self.assertRaises(ValueError):
            APDU.create_data(0, 0, bytes(MAX_APDU_LENGTH)).encode()

    def test_s_frame_with_payload_rejected(self):
        with self.assertRaises(FrameError):
            APDU.decode(bytes([0x68, 0x05, 0x01, 0x00, 0x00, 0x00, 0xFF]))


class TestFrameDecoding(unittest.TestCase):
    """Test partial and malformed input"""

    def test_invalid_start_byte(self):
        with self.assertRaises(FrameError):
            APDU.decode(bytes([0x69, 0x04, 0x07, 0x00, 0x00, 0x00]))

    def test_invalid_length(self):
        with self.assertRaises(FrameError):
            APDU.decode(bytes([0x68, 0x03, 0x07, 0x00, 0x00]))
        with self.assertRaises(FrameError):
            APDU.decode(bytes([0x68, 0xFE]) + bytes(254))

    def test_need_more_bytes(self):
        data = APDU.create_data(1, 2, b'\x01\x02\x03').encode()
        for cut in range(len(data)):
            self.assertEqual(APDU.decode(data[:cut]), (None, 0))

    def test_frame_buffer_reassembly(self):
        stream = (APDU.create_startdt_con().encode()
                  + APDU.create_data(0, 0, b'\xAA').encode()
                  + APDU.create_supervisory(3).encode())
        buffer = FrameBuffer()

        frames = buffer.feed(stream[:3])
        self.assertEqual(frames, [])
        frames = buffer.feed(stream[3:9])
        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0].apci.u_function, UFrameFunction.STARTDT_CON)

        frames = buffer.feed(stream[9:])
        self.assertEqual([f.frame_type for f in frames], [APDUType.I_FRAME, APDUType.S_FRAME])
        self.assertEqual(frames[0].payload, b'\xAA')
        self.assertEqual(len(buffer), 0)

    def test_frame_buffer_malformed(self):
        with self.assertRaises(FrameError):
            FrameBuffer().feed(b'\x00\x04\x07\x00\x00\x00')


if __name__ == '__main__':
    unittest.main()
