import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import cli
import smooth_video

from fake_tools import install_fake_ffmpeg, install_fake_rife, make_input_video


class TestArgumentParsing(unittest.TestCase):
    def test_smooth_arguments(self):
        args = cli.parse_args(["--json-events", "smooth", "in.mp4", "-o", "out.mp4", "--max-threads", "4"])
        self.assertEqual(args.command, "smooth")
        self.assertEqual(args.input_video, "in.mp4")
        self.assertEqual(args.output, "out.mp4")
        self.assertEqual(args.max_threads, 4)
        self.assertTrue(args.json_events)

    def test_reencode_requires_frames_dir(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                cli.parse_args(["reencode", "in.mp4"])

    def test_default_output_path(self):
        resolved = cli.resolve_output_path(Path("/videos/clip.mov"), None)
        self.assertEqual(resolved, Path("/videos/clip_smooth.mp4").resolve())

    def test_runtime_validation(self):
        args = cli.parse_args(["reencode", "in.mp4", "--frames-dir", "f", "--fps", "0"])
        with self.assertRaises(ValueError):
            cli.validate_runtime_args(args)

        args = cli.parse_args(["smooth", "in.mp4", "--max-threads", "-2"])
        with self.assertRaises(ValueError):
            cli.validate_runtime_args(args)


class TestMain(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.addCleanup(self._temp.cleanup)
        self.work = Path(self._temp.name)
        self.root = self.work / "app"

    def run_main(self, *argv):
        with mock.patch("sys.stdout", new_callable=io.StringIO) as out, mock.patch(
            "sys.stderr", new_callable=io.StringIO
        ) as err:
            rc = smooth_video.main(["--app-root", str(self.root), "--no-system-ffmpeg", *argv])
        return rc, out.getvalue(), err.getvalue()

    def test_env_command(self):
        rc, out, _ = self.run_main("env")
        self.assertEqual(rc, 0)
        self.assertTrue(out.startswith("Environment OK"))

    def test_status_command(self):
        rc, out, _ = self.run_main("status", "rife")
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), "missing")

    def test_settings_command_prints_and_saves(self):
        rc, out, err = self.run_main("settings", "--save")

        self.assertEqual(rc, 0, err)
        printed = json.loads(out)
        self.assertEqual(printed["default_thread_spec"], "2:2:2")
        self.assertFalse(printed["prefer_system_ffmpeg"])
        self.assertNotIn("app_root", printed)
        saved = json.loads((self.root / "settings.json").read_text())
        self.assertEqual(saved, printed)
        self.assertIn("Saved", err)

    def test_settings_command_without_save_writes_nothing(self):
        rc, _, _ = self.run_main("settings")
        self.assertEqual(rc, 0)
        self.assertFalse((self.root / "settings.json").exists())

    def test_validation_error_is_reported(self):
        rc, _, err = self.run_main("smooth", str(self.work / "missing.mp4"))
        self.assertEqual(rc, 1)
        self.assertIn("Error: ffmpeg not installed", err)

    def test_smooth_with_json_events(self):
        install_fake_ffmpeg(self.root)
        install_fake_rife(self.root)
        video = make_input_video(self.work)
        output = self.work / "result.mp4"

        rc, out, err = self.run_main("--json-events", "smooth", str(video), "-o", str(output))

        self.assertEqual(rc, 0, err)
        events = [json.loads(line) for line in out.splitlines() if line.strip()]
        self.assertEqual(events[-1]["event"], "pipeline_done")
        self.assertTrue(events[-1]["ok"])
        names = {event["event"] for event in events}
        self.assertEqual(
            names,
            {"pipeline_log", "pipeline_stage", "pipeline_progress", "pipeline_done"},
        )
        self.assertTrue(output.is_file())

    def test_failed_job_returns_one(self):
        install_fake_ffmpeg(self.root)
        video = make_input_video(self.work)

        with mock.patch.dict("os.environ", {"FAKE_FFMPEG_FAIL": "1"}):
            rc, _, err = self.run_main("extract", str(video))

        self.assertEqual(rc, 1)
        self.assertIn("fake ffmpeg error line 11", err)


if __name__ == "__main__":
    unittest.main()
