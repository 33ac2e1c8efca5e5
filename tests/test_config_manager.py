import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from coursetally.config_manager import ConfigManager
from coursetally.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.cache.master_entities_ttl_minutes, 60)
            self.assertEqual(config.cache.weekly_events_ttl_minutes, 10)
            self.assertEqual(config.week.default_offset, -1)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "identity": {"access_token": "tok", "user_email": "me@example.com"},
                    "ledger": {"url": "https://script.example.com/exec"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["ledger"]["url"], "https://script.example.com/exec")
            self.assertEqual(data["identity"]["access_token"], "tok")

    def test_update_deep_merges(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"reference": {"spreadsheet_id": "sheet-1"}})
            updated = manager.update({"reference": {"sheet_name": "Catalog"}})
            self.assertEqual(updated.reference.spreadsheet_id, "sheet-1")
            self.assertEqual(updated.reference.sheet_name, "Catalog")
            self.assertEqual(manager.load().reference.sheet_name, "Catalog")

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update(
                {
                    "identity": {"access_token": "tok", "user_email": "me@example.com"},
                    "calendar": {"caldav_password": "pw"},
                }
            )
            masked = manager.masked()
            self.assertEqual(masked["identity"]["access_token"], "***")
            self.assertEqual(masked["identity"]["user_email"], "me@example.com")
            self.assertEqual(masked["calendar"]["caldav_password"], "***")
            self.assertEqual(manager.load().identity.access_token, "tok")


if __name__ == "__main__":
    unittest.main()
