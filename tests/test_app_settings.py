import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import app_settings
from app_settings import PipelineSettings, load_settings, save_settings, settings_from_mapping


class TestLoadSettings(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.addCleanup(self._temp.cleanup)
        self.root = Path(self._temp.name)
        self.defaults = PipelineSettings(app_root=self.root)

    def write(self, payload) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        (self.root / "settings.json").write_text(text)

    def test_missing_file_gives_defaults(self):
        self.assertEqual(load_settings(self.root), self.defaults)

    def test_corrupt_file_gives_defaults(self):
        self.write("{not json")
        self.assertEqual(load_settings(self.root), self.defaults)

    def test_non_object_payload_gives_defaults(self):
        self.write([1, 2, 3])
        self.assertEqual(load_settings(self.root), self.defaults)

    def test_known_keys_override_and_unknown_keys_are_ignored(self):
        self.write({"max_threads": 8, "encode_preset": "slow", "colour": "blue"})
        settings = load_settings(self.root)
        self.assertEqual(settings.max_threads, 8)
        self.assertEqual(settings.encode_preset, "slow")
        self.assertEqual(settings.app_root, self.root)

    def test_app_root_in_file_is_ignored(self):
        self.write({"app_root": "/somewhere/else"})
        self.assertEqual(load_settings(self.root).app_root, self.root)

    def test_weights_from_object(self):
        self.write({"smooth_stage_weights": {"extract": 10, "interpolate": 80, "encode": 10}})
        settings = load_settings(self.root)
        self.assertEqual(
            settings.smooth_stage_weights,
            (("extract", 10.0), ("interpolate", 80.0), ("encode", 10.0)),
        )

    def test_integer_accepted_for_float_field(self):
        self.write({"default_fps": 25})
        settings = load_settings(self.root)
        self.assertEqual(settings.default_fps, 25.0)
        self.assertIsInstance(settings.default_fps, float)

    def test_optional_endpoint(self):
        self.write({"otlp_endpoint": "http://collector:4318/v1/traces"})
        self.assertEqual(load_settings(self.root).otlp_endpoint, "http://collector:4318/v1/traces")


class TestWrongTypesKeepDefaults(unittest.TestCase):
    root = Path("/app")

    def load(self, payload) -> PipelineSettings:
        return settings_from_mapping(self.root, payload)

    def test_string_in_int_field(self):
        self.assertEqual(self.load({"max_threads": "8"}).max_threads, 12)

    def test_bool_in_int_field(self):
        self.assertEqual(self.load({"stderr_tail_lines": True}).stderr_tail_lines, 8)

    def test_string_in_bool_field(self):
        self.assertIs(self.load({"prefer_system_ffmpeg": "false"}).prefer_system_ffmpeg, True)

    def test_string_in_float_field(self):
        self.assertEqual(self.load({"poll_interval": "fast"}).poll_interval, 0.3)

    def test_number_in_string_field(self):
        self.assertEqual(self.load({"video_codec": 264}).video_codec, "libx264")

    def test_number_in_optional_field(self):
        self.assertIsNone(self.load({"otlp_endpoint": 4318}).otlp_endpoint)

    def test_zero_weights(self):
        settings = self.load({"smooth_stage_weights": {"extract": 0, "interpolate": 0, "encode": 0}})
        self.assertEqual(settings.smooth_stage_weights, PipelineSettings(app_root=self.root).smooth_stage_weights)

    def test_malformed_weights(self):
        settings = self.load({"smooth_stage_weights": [["extract"]]})
        self.assertEqual(settings.smooth_stage_weights, PipelineSettings(app_root=self.root).smooth_stage_weights)

    def test_one_bad_field_does_not_discard_the_others(self):
        settings = self.load({"max_threads": "lots", "min_threads": 2})
        self.assertEqual((settings.min_threads, settings.max_threads), (2, 12))

    def test_direct_construction_rejects_zero_weights(self):
        with self.assertRaises(ValueError):
            PipelineSettings(app_root=self.root, smooth_stage_weights=(("extract", 0.0),))


class TestAppRootAndSave(unittest.TestCase):
    def test_environment_override(self):
        with mock.patch.dict(os.environ, {app_settings.APP_ROOT_ENV: "/data/rife"}):
            self.assertEqual(app_settings.get_default_app_root(), Path("/data/rife"))
            self.assertEqual(load_settings().app_root, Path("/data/rife"))

    def test_saved_settings_load_back(self):
        with tempfile.TemporaryDirectory() as temp:
            root = Path(temp) / "nested" / "app"
            settings = PipelineSettings(
                app_root=root,
                max_threads=4,
                smooth_stage_weights=(("extract", 1.0), ("interpolate", 3.0), ("encode", 1.0)),
                otlp_endpoint="http://localhost:4318/v1/traces",
            )
            path = save_settings(settings)

            self.assertEqual(path, root / "settings.json")
            self.assertEqual(json.loads(path.read_text())["smooth_stage_weights"]["interpolate"], 3.0)
            self.assertEqual(load_settings(root), settings)
            self.assertEqual(
                [name for name, _ in load_settings(root).smooth_stage_weights],
                ["extract", "interpolate", "encode"],
            )


if __name__ == "__main__":
    unittest.main()
