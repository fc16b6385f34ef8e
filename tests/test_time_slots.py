import unittest
import os
import sys
from datetime import time
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from venue_booking.booking.error_utils import TimeValidationError
from venue_booking.booking.period import Period
from venue_booking.booking.time_slots import (display_time, format_time, parse_time, slot_definitions, slot_for_times,
                                              slot_to_times)


class TimeSlotTest(unittest.TestCase):

    def test_parse_time(self):
        self.assertEqual(parse_time('09:30'), time(9, 30))
        self.assertEqual(parse_time('23:59:59'), time(23, 59, 59))
        self.assertEqual(parse_time(time(7, 0)), time(7, 0))
        for value in ('24:00', '9:30', '12:60', 'noon', '', None, 930):
            with self.assertRaises(TimeValidationError, msg=repr(value)):
                parse_time(value)

    def test_slot_to_times(self):
        self.assertEqual(slot_to_times('morning'), (time(10), time(14)))
        self.assertEqual(slot_to_times('EVENING'), (time(14), time(18)))
        self.assertEqual(slot_to_times('night'), (time(18), time(22)))
        self.assertEqual(slot_to_times('full_day'), (time(10), time(18)))
        self.assertIsNone(slot_to_times('short_duration'))
        self.assertIsNone(slot_to_times('brunch'))
        self.assertIsNone(slot_to_times(None))

    def test_slot_for_times(self):
        self.assertEqual(slot_for_times(time(14), time(18)), 'evening')
        self.assertEqual(slot_for_times(time(10), time(18)), 'full_day')
        self.assertEqual(slot_for_times(time(10), time(12)), 'short_duration')

    def test_display(self):
        self.assertEqual(format_time(time(9, 5)), '09:05')
        self.assertIsNone(format_time(None))
        self.assertEqual(display_time(time(10), time(14)), '10:00 AM - 2:00 PM')

    def test_public_definitions(self):
        definitions = slot_definitions()
        self.assertEqual([d['id'] for d in definitions], ['morning', 'evening', 'night', 'full_day'])
        self.assertEqual(definitions[2], {'id': 'night', 'label': 'Night', 'start_time': '18:00',
                                          'end_time': '22:00', 'display_time': '6:00 PM - 10:00 PM'})


class PeriodTest(unittest.TestCase):

    def test_rejects_empty_or_reversed(self):
        with self.assertRaises(TimeValidationError):
            Period(time(10), time(10))
        with self.assertRaises(TimeValidationError):
            Period(time(12), time(10))

    def test_overlap_is_half_open(self):
        morning = Period(time(10), time(14))
        self.assertFalse(morning.overlaps(Period(time(14), time(18))))
        self.assertFalse(Period(time(14), time(18)).overlaps(morning))
        self.assertTrue(morning.overlaps(Period(time(13, 59), time(15))))
        self.assertTrue(morning.overlaps(Period(time(11), time(12))))
        self.assertTrue(Period(time(9), time(22)).overlaps(morning))

    def test_equality(self):
        self.assertEqual(Period(time(10), time(14)), Period(time(10), time(14)))
        self.assertEqual(len({Period(time(10), time(14)), Period(time(10), time(14))}), 1)


if __name__ == "__main__":
    unittest.main()
