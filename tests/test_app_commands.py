import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from app_commands import App
from app_settings import PipelineSettings
from job_events import DoneEvent
from pipeline_errors import (
    EmptyRequiredField,
    InvalidInputPath,
    JobBusy,
    ModelNotFound,
    ToolNotInstalled,
    ValidationError,
)

from fake_tools import install_fake_ffmpeg, install_fake_rife, make_frames, make_input_video


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.addCleanup(self._temp.cleanup)
        self.work = Path(self._temp.name)
        self.root = self.work / "app"
        self.settings = PipelineSettings(
            app_root=self.root,
            prefer_system_ffmpeg=False,
            progress_interval=0.0,
            poll_interval=0.05,
            cancel_grace_seconds=1.0,
        )
        self.app = App(self.settings)
        self.events = []
        self.app.subscribe(self.events.append)
        self.video = make_input_video(self.work)


class TestEnvironmentAndLayout(AppTestCase):
    def test_check_environment(self):
        report = self.app.check_environment()
        self.assertTrue(report.startswith("Environment OK | OS: "))
        self.assertIn("| ARCH: ", report)

    def test_app_paths_creates_layout(self):
        paths = self.app.app_paths()
        self.assertEqual(paths[0], str(self.root))
        for name in ("bin/ffmpeg", "bin/rife", "models", "temp", "cache"):
            self.assertTrue((self.root / name).is_dir(), name)
            self.assertIn(str(self.root / name), paths)

    def test_max_threads_string_shape(self):
        self.assertRegex(self.app.max_threads_string(), r"^(\d+):\1:\1$")


class TestToolManagement(AppTestCase):
    def test_tool_status(self):
        self.assertEqual(self.app.tool_status("ffmpeg"), "missing")
        install_fake_ffmpeg(self.root)
        self.assertEqual(self.app.tool_status("ffmpeg"), "installed")
        self.assertEqual(self.app.tool_status("rife"), "missing")

    def test_install_single_file(self):
        source = self.work / "ffmpeg"
        source.write_text("#!/bin/sh\nexit 0\n")
        if os.name == "posix":
            source.chmod(0o777)

        installed = Path(self.app.install_tool(str(source), "ffmpeg", "7.0"))

        self.assertEqual(installed, self.root / "bin" / "ffmpeg" / "7.0" / "ffmpeg")
        self.assertEqual(self.app.tool_status("ffmpeg"), "installed")
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE(installed.stat().st_mode), 0o755)

    def test_install_folder_keeps_models(self):
        source = self.work / "rife-build"
        (source / "rife-v2.3").mkdir(parents=True)
        (source / "rife-v2.3" / "flownet.bin").write_bytes(b"w")
        (source / "rife-ncnn-vulkan").write_text("#!/bin/sh\nexit 0\n")

        installed = Path(self.app.install_tool(str(source), "rife", "20221029"))

        self.assertEqual(installed, self.root / "bin" / "rife" / "20221029")
        self.assertEqual(
            self.app.default_model_dir(),
            str(self.root / "bin" / "rife" / "20221029" / "rife-v2.3"),
        )
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE((installed / "rife-ncnn-vulkan").stat().st_mode), 0o755)

    def test_install_rejects_bad_requests(self):
        with self.assertRaises(InvalidInputPath):
            self.app.install_tool(str(self.work / "missing"), "ffmpeg", "1")
        with self.assertRaises(EmptyRequiredField):
            self.app.install_tool(str(self.video), "ffmpeg", "  ")
        with self.assertRaises(ValidationError):
            self.app.install_tool(str(self.video), "x264", "1")
        with self.assertRaises(ValidationError):
            self.app.install_tool(str(self.video), "ffmpeg", "..")

    def test_validate_tools(self):
        install_fake_ffmpeg(self.root)
        install_fake_rife(self.root)

        result = self.app.validate_tools()

        self.assertTrue(result.ffmpeg.ok)
        self.assertIn("ffmpeg version", result.ffmpeg.output)
        # The fake rife exits 1 on -h but prints usage text.
        self.assertTrue(result.rife.ok)
        self.assertIn("Models: ", result.rife.output)

    def test_validate_tools_without_models(self):
        install_fake_rife(self.root, model="")
        result = self.app.validate_tools()

        self.assertFalse(result.ffmpeg.ok)
        self.assertIsNone(result.ffmpeg.path)
        self.assertFalse(result.rife.ok)
        self.assertIn("NOT FOUND", result.rife.output)


class TestJobRequests(AppTestCase):
    def wait_done(self, accepted) -> DoneEvent:
        outcome = accepted.handle.wait(timeout=30)
        self.assertIsNotNone(outcome, "job did not finish")
        return outcome

    def test_smooth_requires_installed_tools(self):
        install_fake_ffmpeg(self.root)
        with self.assertRaises(ToolNotInstalled) as ctx:
            self.app.smooth_video(str(self.video), str(self.work / "out.mp4"))
        self.assertEqual(str(ctx.exception), "rife not installed (install rife first)")

    def test_smooth_requires_models(self):
        install_fake_ffmpeg(self.root)
        install_fake_rife(self.root, model="")
        with self.assertRaises(ModelNotFound):
            self.app.smooth_video(str(self.video), str(self.work / "out.mp4"))

    def test_smooth_video_end_to_end(self):
        install_fake_ffmpeg(self.root)
        install_fake_rife(self.root)
        output = self.work / "smooth.mp4"

        accepted = self.app.smooth_video(str(self.video), str(output), max_threads=3)
        outcome = self.wait_done(accepted)

        self.assertTrue(outcome.ok, outcome.message)
        self.assertTrue(output.is_file())
        self.assertEqual(accepted.frames_dir, outcome.frames_dir)
        self.assertTrue(outcome.frame_pattern.endswith("%08d.png"))
        self.assertIn("Threads (-j): 3:3:3", [getattr(e, "text", None) for e in self.events])

    def test_extract_frames_uses_jpeg(self):
        install_fake_ffmpeg(self.root)

        accepted = self.app.extract_frames(str(self.video))
        outcome = self.wait_done(accepted)

        self.assertTrue(outcome.ok, outcome.message)
        self.assertEqual(outcome.message, "Frames extracted: 3")
        self.assertTrue(outcome.frame_pattern.endswith("%08d.jpg"))
        self.assertEqual(len(list(Path(outcome.frames_dir).glob("*.jpg"))), 3)

    def test_extract_rejects_missing_input(self):
        install_fake_ffmpeg(self.root)
        with self.assertRaises(InvalidInputPath):
            self.app.extract_frames(str(self.work / "nope.mp4"))
        with self.assertRaises(EmptyRequiredField):
            self.app.extract_frames("")

    def test_reencode_validates_before_spawning(self):
        install_fake_ffmpeg(self.root)
        frames = make_frames(self.work / "frames", 2)

        with mock.patch("supervisor.subprocess.Popen") as popen:
            with self.assertRaises(InvalidInputPath):
                self.app.reencode_only(
                    str(self.video), str(self.work / "out.mp4"), str(self.work / "missing")
                )
            with self.assertRaises(EmptyRequiredField):
                self.app.reencode_only(str(self.video), "   ", str(frames))
            with self.assertRaises(EmptyRequiredField):
                self.app.reencode_only(str(self.video), str(self.work / "out.mp4"), "")

        popen.assert_not_called()
        self.assertIsNone(self.app.runner.active)
        self.assertEqual(self.events, [])

    def test_reencode_only_end_to_end(self):
        install_fake_ffmpeg(self.root)
        frames = make_frames(self.work / "frames", 4)
        output = self.work / "again.mov"

        outcome = self.wait_done(self.app.reencode_only(str(self.video), str(output), str(frames)))

        self.assertTrue(outcome.ok, outcome.message)
        self.assertEqual(outcome.message, f"Done: {output.resolve()}")
        self.assertEqual(outcome.frames_dir, str(frames.resolve()))

    def test_run_interpolation_rejects_missing_model(self):
        install_fake_rife(self.root)
        frames = make_frames(self.work / "frames", 2)
        with self.assertRaises(ModelNotFound):
            self.app.run_interpolation(
                str(frames), str(self.work / "out"), str(self.work / "no-models"), "2:2:2"
            )

    def test_run_interpolation_with_models_root(self):
        rife = install_fake_rife(self.root)
        frames = make_frames(self.work / "frames", 2)

        accepted = self.app.run_interpolation(
            str(frames), str(self.work / "out"), str(rife.parent), 40
        )
        outcome = self.wait_done(accepted)

        self.assertTrue(outcome.ok, outcome.message)
        self.assertEqual(outcome.message, "Interpolated frames: 4")
        texts = [getattr(event, "text", None) for event in self.events]
        self.assertIn("Threads (-j): 12:12:12", texts)
        self.assertIn("Model arg (-m): rife-v4.6", texts)

    def test_only_one_job_at_a_time(self):
        install_fake_rife(self.root)
        install_fake_ffmpeg(self.root)
        frames = make_frames(self.work / "frames", 10)

        with mock.patch.dict(os.environ, {"FAKE_RIFE_SLEEP": "1.0"}):
            accepted = self.app.run_interpolation(str(frames), str(self.work / "out"))
            try:
                with self.assertRaises(JobBusy):
                    self.app.extract_frames(str(self.video))
            finally:
                accepted.handle.cancel()
                outcome = self.wait_done(accepted)

        self.assertEqual(outcome.message, "Cancelled")


if __name__ == "__main__":
    unittest.main()
