"""
Tests for select-before-operate bookkeeping
"""

import unittest
from dataclasses import replace

from telecontrol.iec104 import elements
from telecontrol.iec104.messages import TypeID
from telecontrol.iec104.selection import SelectionManager, SelectionState


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


SELECT_ON = elements.DoubleCommand(elements.DoubleCommandValue.ON, elements.SELECT)
EXECUTE_ON = elements.DoubleCommand(elements.DoubleCommandValue.ON, elements.EXECUTE)


class TestSelectionManager(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.manager = SelectionManager(timeout_s=10.0, clock=self.clock)

    def test_select_then_execute(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.clock.now = 3.0

        selection = self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON)
        self.assertIsNotNone(selection)
        self.assertEqual(selection.state, SelectionState.OPERATED)
        self.assertEqual(selection.operated_at, 3.0)
        self.assertIsNone(self.manager.get(1))

    def test_execute_without_select(self):
        self.assertIsNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON))

    def test_execute_other_ioa(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.assertIsNone(self.manager.operate(1, 5002, TypeID.C_DC_NA_1, EXECUTE_ON))
        # selection stays armed for the right object
        self.assertIsNotNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON))

    def test_execute_other_value_or_qualifier(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        off = elements.DoubleCommand(elements.DoubleCommandValue.OFF)
        self.assertIsNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, off))

        pulse = replace(EXECUTE_ON, qualifier=elements.CommandQualifier(
            qualifier=elements.PulseQualifier.SHORT_PULSE))
        self.assertIsNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, pulse))

    def test_time_tagged_execute_matches(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.assertIsNotNone(self.manager.operate(1, 5001, TypeID.C_DC_TA_1, EXECUTE_ON))

    def test_selection_expires(self):
        selection = self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.clock.now = 10.5
        self.assertEqual(selection.time_remaining(self.clock.now), 0.0)

        self.assertIsNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON))
        self.assertEqual(selection.state, SelectionState.EXPIRED)
        self.assertIsNone(self.manager.get(1))

    def test_one_selection_per_station(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.manager.select(1, 5002, TypeID.C_DC_NA_1, SELECT_ON)
        self.manager.select(2, 5001, TypeID.C_DC_NA_1, SELECT_ON)

        self.assertIsNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON))
        self.assertIsNotNone(self.manager.operate(1, 5002, TypeID.C_DC_NA_1, EXECUTE_ON))
        self.assertIsNotNone(self.manager.operate(2, 5001, TypeID.C_DC_NA_1, EXECUTE_ON))

    def test_cancel(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.assertFalse(self.manager.cancel(1, 5002))
        self.assertTrue(self.manager.cancel(1, 5001))
        self.assertIsNone(self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON))
        self.assertFalse(self.manager.cancel(1))

    def test_audit_callback(self):
        records = []
        self.manager.set_audit_callback(records.append)
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.manager.operate(1, 5001, TypeID.C_DC_NA_1, EXECUTE_ON)

        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]['action'], 'operate')
        self.assertEqual(records[0]['address'], 5001)

    def test_cleanup_expired(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.manager.select(2, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.clock.now = 11.0
        self.manager.cleanup_expired()
        self.assertEqual(self.manager.selections, {})

    def test_to_dict(self):
        selection = self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.clock.now = 4.0
        info = selection.to_dict(self.clock.now)
        self.assertEqual(info['type_id'], 'C_DC_NA_1')
        self.assertEqual(info['state'], 'SELECTED')
        self.assertEqual(info['time_remaining_s'], 6.0)

    def test_to_list_drops_expired(self):
        self.manager.select(1, 5001, TypeID.C_DC_NA_1, SELECT_ON)
        self.clock.now = 8.0
        self.manager.select(2, 7000, TypeID.C_DC_NA_1, SELECT_ON)
        self.clock.now = 12.0

        selections = self.manager.to_list()
        self.assertEqual([(s['common_address'], s['address']) for s in selections], [(2, 7000)])
        self.assertEqual(selections[0]['time_remaining_s'], 6.0)
        self.assertNotIn(1, self.manager.selections)


if __name__ == '__main__':
    unittest.main()
