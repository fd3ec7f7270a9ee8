import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from familycal.config_manager import ConfigManager
from familycal.errors import ValidationError
from familycal.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.calendar.default_window_days, 90)
            self.assertEqual(config.completion.missing_member_policy, "reject")

    def test_update_deep_merges(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"calendar": {"max_window_days": {"DAILY": 100}}})
            updated = manager.update({"calendar": {"default_window_days": 14}})
            self.assertEqual(updated.calendar.default_window_days, 14)
            self.assertEqual(updated.calendar.max_window_days["DAILY"], 100)
            self.assertEqual(updated.calendar.max_window_days["YEARLY"], 3650)
            self.assertEqual(manager.load(), updated)

    def test_update_rejects_unknown_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with self.assertRaises(ValidationError):
                manager.update({"caldav": {"password": "secret"}})
            with self.assertRaises(ValidationError):
                manager.update(["calendar"])
            self.assertEqual(manager.load(), AppConfig())

    def test_invalid_yaml_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("calendar: [unclosed\n", encoding="utf-8")
            with self.assertRaises(ValidationError):
                ConfigManager(str(config_path)).load()

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "storage": {"db_path": "/var/lib/familycal/state.db"},
                    "completion": {"missing_member_policy": "first_parent"},
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
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["storage"]["db_path"], "/var/lib/familycal/state.db")
            self.assertEqual(data["completion"]["missing_member_policy"], "first_parent")


if __name__ == "__main__":
    unittest.main()
