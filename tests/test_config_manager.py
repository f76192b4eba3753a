import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calnotes.config_manager import ConfigManager, mask_url
from calnotes.models import AppConfig

PRIVATE_URL = "https://calendar.example.com/private.ics?token=s3cret"


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "config.yaml"
        self.manager = ConfigManager(str(self.config_path))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_is_created_with_defaults(self) -> None:
        self.assertTrue(self.config_path.exists())
        config = self.manager.load()
        self.assertEqual(config.sources, [])
        self.assertEqual(config.identity_keys.event_id, "externalEventId")
        self.assertTrue(config.behavior.no_loss_mode)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        config = AppConfig.from_dict({"sources": [{"url": "webcal://calendar.example.com/a.ics"}]})

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            self.manager.save(config)

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["sources"][0]["url"], "https://calendar.example.com/a.ics")
        self.assertFalse(Path(str(self.config_path) + ".tmp").exists())

    def test_update_deep_merges_sections(self) -> None:
        self.manager.update({"sync": {"interval_seconds": 600, "timezone": "Europe/Berlin"}})
        config = self.manager.update({"sync": {"interval_seconds": 900}, "behavior": {"delete_policy": "archive"}})

        self.assertEqual(config.sync.interval_seconds, 900)
        self.assertEqual(config.sync.timezone, "Europe/Berlin")
        self.assertEqual(config.behavior.delete_policy, "archive")
        self.assertEqual(self.manager.load().sync.interval_seconds, 900)

    def test_masked_hides_feed_tokens(self) -> None:
        self.manager.update({"sources": [{"url": PRIVATE_URL}, {"url": "https://calendar.example.com/public.ics"}]})
        masked = self.manager.masked()
        self.assertEqual(
            [source["url"] for source in masked["sources"]],
            ["https://calendar.example.com/private.ics?***", "https://calendar.example.com/public.ics"],
        )
        self.assertEqual(self.manager.load().sources[0].url, PRIVATE_URL)

    def test_unmask_sources_restores_stored_urls(self) -> None:
        self.manager.update({"sources": [{"url": PRIVATE_URL, "folder": "Work"}]})
        payload = {"sources": [{"url": mask_url(PRIVATE_URL), "folder": "Meetings"}, "https://new.example.com/x.ics"]}

        restored = self.manager.unmask_sources(payload)

        self.assertEqual(restored["sources"][0], {"url": PRIVATE_URL, "folder": "Meetings"})
        self.assertEqual(restored["sources"][1], {"url": "https://new.example.com/x.ics"})
        self.assertEqual(self.manager.unmask_sources({"sync": {}}), {"sync": {}})


if __name__ == "__main__":
    unittest.main()
