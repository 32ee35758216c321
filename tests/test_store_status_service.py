from __future__ import annotations

import unittest
from datetime import datetime, time

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from canteen.models import Base, ForceStatus, StoreSetting
from canteen.services.store_status_service import (
    CLOSE_TIME_KEY,
    FORCE_STATUS_KEY,
    OPEN_TIME_KEY,
    StoreSettings,
    current_store_status,
    evaluate_store_status,
    format_time_12h,
    load_store_settings,
    parse_hhmm,
    update_store_settings,
)


class StoreStatusEvaluationTests(unittest.TestCase):
    def test_day_window(self) -> None:
        store = StoreSettings(open_time='09:00', close_time='21:00')
        self.assertTrue(evaluate_store_status(time(9, 0), store).is_open)
        self.assertTrue(evaluate_store_status(time(20, 59), store).is_open)
        self.assertFalse(evaluate_store_status(time(21, 0), store).is_open)
        self.assertFalse(evaluate_store_status(time(8, 59), store).is_open)

    def test_overnight_window(self) -> None:
        store = StoreSettings(open_time='22:00', close_time='06:00')
        self.assertTrue(evaluate_store_status(time(23, 0), store).is_open)
        self.assertTrue(evaluate_store_status(time(2, 0), store).is_open)
        self.assertFalse(evaluate_store_status(time(12, 0), store).is_open)
        self.assertFalse(evaluate_store_status(time(6, 0), store).is_open)

    def test_closed_message_names_opening_time(self) -> None:
        store = StoreSettings(open_time='09:00', close_time='21:00', closed_message='We are closed.')
        result = evaluate_store_status(datetime(2024, 1, 1, 22, 30), store)
        self.assertFalse(result.is_open)
        self.assertEqual(result.message, 'We are closed. Opens at 9:00 AM.')
        self.assertEqual(result.next_open_time, '9:00 AM')

    def test_force_closed_ignores_clock(self) -> None:
        store = StoreSettings(force_status=ForceStatus.CLOSED, closed_message='Holiday')
        for hour in (0, 10, 15, 23):
            result = evaluate_store_status(time(hour, 0), store)
            self.assertFalse(result.is_open)
            self.assertEqual(result.message, 'Holiday')
            self.assertIsNone(result.next_open_time)

    def test_force_open_ignores_clock(self) -> None:
        store = StoreSettings(open_time='09:00', close_time='10:00', force_status=ForceStatus.OPEN)
        for hour in (0, 3, 22):
            self.assertTrue(evaluate_store_status(time(hour, 30), store).is_open)

    def test_same_input_same_answer(self) -> None:
        store = StoreSettings(open_time='22:00', close_time='06:00')
        first = evaluate_store_status(time(5, 0), store)
        second = evaluate_store_status(time(5, 0), store)
        self.assertEqual(first, second)

    def test_format_time_12h(self) -> None:
        self.assertEqual(format_time_12h('00:05'), '12:05 AM')
        self.assertEqual(format_time_12h('12:00'), '12:00 PM')
        self.assertEqual(format_time_12h('13:30'), '1:30 PM')
        self.assertEqual(format_time_12h('9:15'), '9:15 AM')

    def test_parse_hhmm_rejects_garbage(self) -> None:
        for value in ('24:00', '12:60', 'noon', ''):
            with self.assertRaises(ValueError):
                parse_hhmm(value)


class StoreSettingsPersistenceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.db.close()

    def test_defaults_when_nothing_stored(self) -> None:
        store = load_store_settings(self.db)
        self.assertEqual(store.open_time, '09:00')
        self.assertEqual(store.close_time, '21:00')
        self.assertEqual(store.force_status, ForceStatus.AUTO)

    def test_malformed_values_fall_back_to_defaults(self) -> None:
        self.db.add_all(
            [
                StoreSetting(setting_key=OPEN_TIME_KEY, setting_value='late'),
                StoreSetting(setting_key=CLOSE_TIME_KEY, setting_value='23:30'),
                StoreSetting(setting_key=FORCE_STATUS_KEY, setting_value='maybe'),
            ]
        )
        self.db.flush()

        with self.assertLogs('canteen.services.store_status_service', level='WARNING'):
            store = load_store_settings(self.db)
        self.assertEqual(store.open_time, '09:00')
        self.assertEqual(store.close_time, '23:30')
        self.assertEqual(store.force_status, ForceStatus.AUTO)

    def test_update_then_current_status_reads_fresh_values(self) -> None:
        update_store_settings(self.db, updated_by_user_id=None, force_status='closed', closed_message='Back soon')
        result = current_store_status(self.db, now=datetime(2024, 1, 1, 12, 0))
        self.assertFalse(result.is_open)
        self.assertEqual(result.message, 'Back soon')

        update_store_settings(self.db, updated_by_user_id=None, force_status='AUTO')
        self.assertTrue(current_store_status(self.db, now=datetime(2024, 1, 1, 12, 0)).is_open)

    def test_update_rejects_invalid_input(self) -> None:
        with self.assertRaises(ValueError):
            update_store_settings(self.db, updated_by_user_id=None, open_time='25:00')
        with self.assertRaises(ValueError):
            update_store_settings(self.db, updated_by_user_id=None, force_status='sometimes')
        with self.assertRaises(ValueError):
            update_store_settings(self.db, updated_by_user_id=None, closed_message='   ')
        self.assertEqual(self.db.query(StoreSetting).count(), 0)


if __name__ == '__main__':
    unittest.main()
