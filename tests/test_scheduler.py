import threading
import unittest
from unittest import mock

from calnotes.models import AppConfig
from calnotes.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def test_startup_run_then_manual_trigger(self) -> None:
        triggers: list[str] = []
        manual_seen = threading.Event()

        def run_once(trigger: str = "manual") -> None:
            triggers.append(trigger)
            if trigger == "manual":
                manual_seen.set()

        engine = mock.Mock()
        engine.run_once.side_effect = run_once
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict({"sync": {"interval_seconds": 3600}})

        scheduler = SyncScheduler(engine, config_manager)
        scheduler.start()
        try:
            self.assertTrue(scheduler.running)
            scheduler.trigger_manual()
            self.assertTrue(manual_seen.wait(timeout=5))
        finally:
            scheduler.stop()

        self.assertFalse(scheduler.running)
        self.assertEqual(triggers[0], "startup")
        self.assertIn("manual", triggers)
        self.assertNotIn("scheduled", triggers)


if __name__ == "__main__":
    unittest.main()
