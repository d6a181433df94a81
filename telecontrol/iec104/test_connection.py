"""
Tests for the IEC 104 connection state machine
==============================================

The machine is driven by a fake clock, so every timer can be checked
without waiting.
"""

import unittest

from telecontrol.iec104.apci import SEQUENCE_MODULO, UFrameFunction
from telecontrol.iec104.connection import ConnectionState, ConnectionStateMachine
from telecontrol.iec104.errors import SequenceError


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestConnectionStateMachine(unittest.TestCase):
    """Test connection state machine"""

    def setUp(self):
        self.clock = FakeClock()
        self.fsm = ConnectionStateMachine(remote_address='127.0.0.1:2404', k=3, w=2,
                                          t1=15.0, t2=10.0, t3=20.0, clock=self.clock)

    def start(self):
        self.fsm.on_connected()
        self.fsm.on_u_sent(UFrameFunction.STARTDT_ACT)
        self.assertTrue(self.fsm.on_u_confirmation(UFrameFunction.STARTDT_CON))

    def test_initial_state(self):
        self.assertEqual(self.fsm.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.fsm.is_connected())
        self.assertIsNone(self.fsm.next_deadline())

    def test_connection_flow(self):
        self.fsm.on_connected()
        self.assertEqual(self.fsm.state, ConnectionState.CONNECTED_STOPPED)
        self.assertFalse(self.fsm.can_send())

        self.fsm.on_u_sent(UFrameFunction.STARTDT_ACT)
        self.assertEqual(self.fsm.pending_u, UFrameFunction.STARTDT_ACT)
        self.assertTrue(self.fsm.on_u_confirmation(UFrameFunction.STARTDT_CON))
        self.assertTrue(self.fsm.is_active())

        self.fsm.on_u_sent(UFrameFunction.STOPDT_ACT)
        self.assertTrue(self.fsm.stopping)
        self.assertFalse(self.fsm.can_send())
        self.assertTrue(self.fsm.on_u_confirmation(UFrameFunction.STOPDT_CON))
        self.assertEqual(self.fsm.state, ConnectionState.CONNECTED_STOPPED)

        self.fsm.disconnect()
        self.assertEqual(self.fsm.state, ConnectionState.DISCONNECTED)

    def test_unexpected_confirmation(self):
        self.fsm.on_connected()
        self.assertFalse(self.fsm.on_u_confirmation(UFrameFunction.STARTDT_CON))
        self.fsm.on_u_sent(UFrameFunction.STARTDT_ACT)
        self.assertFalse(self.fsm.on_u_confirmation(UFrameFunction.STOPDT_CON))
        self.assertEqual(self.fsm.state, ConnectionState.CONNECTED_STOPPED)

    def test_slave_activation(self):
        self.fsm.on_connected()
        self.fsm.recv_sequence = 9
        self.fsm.on_startdt_act()
        self.assertTrue(self.fsm.is_active())
        self.assertEqual(self.fsm.recv_sequence, 0)

        self.fsm.on_stopdt_act()
        self.assertTrue(self.fsm.stopping)
        self.assertTrue(self.fsm.stop_confirmable())
        self.fsm.on_stop_confirmed()
        self.assertEqual(self.fsm.state, ConnectionState.CONNECTED_STOPPED)
        self.assertFalse(self.fsm.stopping)

    def test_peer_stop_held_by_unacknowledged_frames(self):
        self.fsm.on_connected()
        self.fsm.on_startdt_act()
        self.fsm.on_data_sent()

        self.fsm.on_stopdt_act()
        self.assertFalse(self.fsm.can_send())
        self.assertFalse(self.fsm.stop_confirmable())
        self.fsm.on_ack(1)
        self.assertTrue(self.fsm.stop_confirmable())

    def test_startdt_resets_sequences(self):
        self.start()
        self.fsm.on_data_sent()
        self.fsm.on_i_frame(0, 1)

        self.fsm.on_u_sent(UFrameFunction.STARTDT_ACT)
        self.assertEqual((self.fsm.send_sequence, self.fsm.recv_sequence), (0, 0))

    def test_send_window(self):
        self.start()
        for expected in range(3):
            self.assertTrue(self.fsm.can_send())
            self.assertEqual(self.fsm.on_data_sent(), (expected, 0))
        self.assertFalse(self.fsm.can_send())

        self.assertEqual(self.fsm.on_ack(2), 2)
        self.assertTrue(self.fsm.can_send())
        self.assertEqual(len(self.fsm.unacked), 1)
        self.assertEqual(self.fsm.ack_sequence, 2)

    def test_ack_of_unsent_frame(self):
        self.start()
        self.fsm.on_data_sent()
        with self.assertRaises(SequenceError):
            self.fsm.on_ack(2)

    def test_sequence_number_wraparound(self):
        self.start()
        last = SEQUENCE_MODULO - 1
        self.fsm.send_sequence = last
        self.fsm.ack_sequence = last

        self.assertEqual(self.fsm.on_data_sent()[0], last)
        self.assertEqual(self.fsm.send_sequence, 0)
        self.assertEqual(self.fsm.on_ack(0), 1)

        self.fsm.recv_sequence = last
        self.fsm.recv_acked = last
        self.fsm.on_i_frame(last, 0)
        self.assertEqual(self.fsm.recv_sequence, 0)
        self.assertEqual(self.fsm.unacknowledged_received, 1)

    def test_unexpected_send_sequence(self):
        self.start()
        self.fsm.on_i_frame(0, 0)
        with self.assertRaises(SequenceError):
            self.fsm.on_i_frame(2, 0)

    def test_i_frame_while_stopped(self):
        self.fsm.on_connected()
        with self.assertRaises(SequenceError):
            self.fsm.on_i_frame(0, 0)

    def test_supervisory_after_w_frames(self):
        self.start()
        self.fsm.on_i_frame(0, 0)
        self.assertFalse(self.fsm.need_supervisory())
        self.fsm.on_i_frame(1, 0)
        self.assertTrue(self.fsm.need_supervisory())

        self.assertEqual(self.fsm.on_supervisory_sent(), 2)
        self.assertFalse(self.fsm.need_supervisory())

    def test_supervisory_after_t2(self):
        self.start()
        self.fsm.on_i_frame(0, 0)
        self.assertEqual(self.fsm.next_deadline(), self.clock.now + 10.0)

        self.clock.advance(9.9)
        self.assertFalse(self.fsm.need_supervisory())
        self.clock.now = 110.0
        self.assertTrue(self.fsm.need_supervisory())

    def test_outgoing_i_frame_acknowledges(self):
        self.start()
        self.fsm.on_i_frame(0, 0)
        self.assertEqual(self.fsm.on_data_sent(), (0, 1))
        self.assertFalse(self.fsm.need_supervisory())

    def test_t1_on_i_frame(self):
        self.start()
        self.fsm.on_data_sent()
        self.assertEqual(self.fsm.next_deadline(), self.clock.now + 15.0)

        self.clock.advance(14.9)
        self.assertIsNone(self.fsm.t1_expired())
        self.clock.now = 115.0
        self.assertIn("N(S)=0", self.fsm.t1_expired())

    def test_ack_stops_t1(self):
        self.start()
        self.fsm.on_data_sent()
        self.clock.advance(10)
        self.fsm.on_ack(1)
        self.clock.advance(10)
        self.assertIsNone(self.fsm.t1_expired())

    def test_t1_on_u_activation(self):
        self.fsm.on_connected()
        self.fsm.on_u_sent(UFrameFunction.STARTDT_ACT)
        self.clock.advance(15)
        self.assertIn("STARTDT_ACT", self.fsm.t1_expired())

    def test_testfr_management(self):
        """T3 idle -> TESTFR; any received frame restarts T3"""
        self.start()
        self.clock.advance(19)
        self.assertFalse(self.fsm.need_testfr())
        self.fsm.on_frame_received()
        self.clock.advance(19)
        self.assertFalse(self.fsm.need_testfr())
        self.clock.advance(1)
        self.assertTrue(self.fsm.need_testfr())

        self.fsm.on_u_sent(UFrameFunction.TESTFR_ACT)
        self.assertFalse(self.fsm.need_testfr())
        self.assertEqual(self.fsm.next_deadline(), self.clock.now + 15.0)

        self.fsm.on_frame_received()
        self.assertTrue(self.fsm.on_u_confirmation(UFrameFunction.TESTFR_CON))
        self.assertTrue(self.fsm.is_active())
        self.assertEqual(self.fsm.next_deadline(), self.clock.now + 20.0)

    def test_disconnect_clears_timers(self):
        self.start()
        self.fsm.on_data_sent()
        self.fsm.disconnect()
        self.assertIsNone(self.fsm.next_deadline())
        self.assertIsNone(self.fsm.t1_expired())


if __name__ == '__main__':
    unittest.main()
