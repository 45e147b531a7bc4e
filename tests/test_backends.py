import subprocess
import unittest
from pathlib import Path
from unittest import mock

import numpy as np

import backends
from backends import (
    BackendError,
    BackendNonzeroExit,
    BackendTimeout,
    BackendUnavailable,
    ConfigError,
    CwebpEncoder,
    ImageMagickEncoder,
    ImageMagickTransform,
    RpicamStill,
    find_capture_binary,
    get_recipe,
    materialize,
    probe_binaries,
    run_command,
)
from fakes import make_request
from metadata import CaptureRequest, Raster


def completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class RunCommandTests(unittest.TestCase):
    def test_returns_stdout(self) -> None:
        with mock.patch("subprocess.run", return_value=completed(stdout=b"data")) as run:
            self.assertEqual(run_command(["convert", "x"], 5), b"data")
        self.assertEqual(run.call_args.kwargs["timeout"], 5)

    def test_nonzero_exit_keeps_stderr(self) -> None:
        with mock.patch("subprocess.run", return_value=completed(returncode=255, stderr=b"ERROR: no cameras available\n")):
            with self.assertRaises(BackendNonzeroExit) as ctx:
                run_command(["rpicam-still"], 5)
        self.assertEqual(ctx.exception.returncode, 255)
        self.assertEqual(ctx.exception.stderr, "ERROR: no cameras available")

    def test_timeout(self) -> None:
        err = subprocess.TimeoutExpired(cmd="cwebp", timeout=1, stderr=b"slow")
        with mock.patch("subprocess.run", side_effect=err):
            with self.assertRaises(BackendTimeout) as ctx:
                run_command(["cwebp"], 1)
        self.assertIsInstance(ctx.exception, BackendError)
        self.assertEqual(ctx.exception.stderr, "slow")

    def test_missing_binary(self) -> None:
        with mock.patch("subprocess.run", side_effect=FileNotFoundError()):
            with self.assertRaises(BackendUnavailable):
                run_command(["nope"], 1)


class BinaryLookupTests(unittest.TestCase):
    def test_prefers_rpicam_still(self) -> None:
        paths = {"rpicam-still": "/usr/bin/rpicam-still", "libcamera-still": "/usr/bin/libcamera-still"}
        with mock.patch("shutil.which", side_effect=paths.get):
            self.assertEqual(find_capture_binary(), "/usr/bin/rpicam-still")

    def test_falls_back_to_libcamera_still(self) -> None:
        with mock.patch("shutil.which", side_effect={"libcamera-still": "/usr/bin/libcamera-still"}.get):
            self.assertEqual(find_capture_binary(), "/usr/bin/libcamera-still")

    def test_nothing_installed(self) -> None:
        with mock.patch("shutil.which", return_value=None):
            with self.assertRaises(BackendUnavailable):
                find_capture_binary()
            with self.assertRaises(BackendUnavailable):
                find_capture_binary("/opt/cam/still")

    def test_probe_lists_missing(self) -> None:
        with mock.patch("shutil.which", side_effect={"convert": "/usr/bin/convert"}.get):
            probe_binaries(["convert"])
            with self.assertRaisesRegex(BackendUnavailable, "cwebp"):
                probe_binaries(["convert", "cwebp"])


class CommandLineTests(unittest.TestCase):
    def test_capture_command(self) -> None:
        cam = RpicamStill("rpicam-still")
        self.assertEqual(
            cam.command(make_request()),
            ["rpicam-still", "-n", "-t", "1", "--encoding", "jpg", "-o", "-"],
        )
        sized = CaptureRequest(timeout_ms=400, longest_edge=960, recipe="plain", width=2028, height=1520)
        self.assertIn("--width", cam.command(sized))

    def test_capture_writes_temp_raster(self) -> None:
        with mock.patch("subprocess.run", return_value=completed(stdout=b"\xff\xd8jpeg")):
            raster = RpicamStill("rpicam-still").capture(make_request())
        self.assertTrue(raster.path.exists())
        self.assertEqual(raster.path.read_bytes(), b"\xff\xd8jpeg")
        path = raster.path
        raster.release()
        self.assertFalse(path.exists())

    def test_capture_with_empty_output_fails(self) -> None:
        with mock.patch("subprocess.run", return_value=completed(stdout=b"")):
            with self.assertRaises(BackendError):
                RpicamStill("rpicam-still").capture(make_request())

    def test_capture_disk_full_removes_temp_file(self) -> None:
        created = []
        real_temp_path = backends.temp_path

        def tracking_temp_path(tag, suffix):
            path = real_temp_path(tag, suffix)
            created.append(path)
            return path

        with mock.patch.object(backends, "temp_path", side_effect=tracking_temp_path), \
                mock.patch("subprocess.run", return_value=completed(stdout=b"\xff\xd8jpeg")), \
                mock.patch.object(Path, "write_bytes", side_effect=OSError(28, "No space left on device")):
            with self.assertRaises(BackendError) as ctx:
                RpicamStill("rpicam-still").capture(make_request())
        self.assertIn("No space left", str(ctx.exception))
        self.assertEqual(len(created), 1)
        self.assertFalse(created[0].exists())

    def test_transform_command_carries_recipe(self) -> None:
        argv = ImageMagickTransform().command(Path("in.jpg"), Path("out.png"), 960, get_recipe("filmish"))
        self.assertEqual(argv[:4], ["convert", "in.jpg", "-resize", "960x960>"])
        self.assertIn("-sigmoidal-contrast", argv)
        self.assertEqual(argv[argv.index("-sigmoidal-contrast") + 1], "5x50%")
        self.assertEqual(argv[argv.index("-contrast-stretch") + 1], "0.3%x0.3%")
        self.assertEqual(argv[argv.index("-unsharp") + 1], "0x1+1+0.02")
        self.assertEqual(argv[-1], "PNG24:out.png")

    def test_classic_recipe_strips_metadata(self) -> None:
        args = get_recipe("classic").imagemagick_args()
        self.assertEqual(args[0], "-strip")
        self.assertIn("Gray", args)

    def test_unknown_recipe(self) -> None:
        with self.assertRaises(ConfigError):
            get_recipe("sepia")

    def test_encoder_commands(self) -> None:
        webp = ImageMagickEncoder("webp").command(Path("t.png"), 80, 100_000)
        self.assertIn("webp:target-size=100000", webp)
        self.assertEqual(webp[-3:], ["-quality", "80", "webp:-"])

        jpg = ImageMagickEncoder("jpg").command(Path("t.png"), 70, None)
        self.assertEqual(jpg, ["convert", "t.png", "-quality", "70", "jpg:-"])

        cwebp = CwebpEncoder().command(Path("t.png"), 75, 100_000)
        self.assertEqual(cwebp[cwebp.index("-size") + 1], "100000")
        self.assertEqual(cwebp[-3:], ["t.png", "-o", "-"])

    def test_failed_transform_leaves_no_temp_file(self) -> None:
        created = []
        real_temp_path = backends.temp_path

        def tracking_temp_path(tag, suffix):
            path = real_temp_path(tag, suffix)
            created.append(path)
            return path

        source = Raster(data=np.zeros((4, 4), dtype=np.uint8))
        with mock.patch.object(backends, "temp_path", side_effect=tracking_temp_path):
            with mock.patch("subprocess.run", return_value=completed(returncode=1, stderr=b"convert: bad")):
                with self.assertRaises(BackendNonzeroExit):
                    ImageMagickTransform().transform(source, 960, "plain")
        self.assertEqual(len(created), 2)
        self.assertFalse(any(p.exists() for p in created))


class MaterializeTests(unittest.TestCase):
    def test_existing_path_is_reused(self) -> None:
        raster = Raster(path=Path("/tmp/whatever.png"))
        self.assertEqual(materialize(raster), (Path("/tmp/whatever.png"), False))

    def test_in_memory_raster_written_to_temp(self) -> None:
        path, is_temp = materialize(Raster(data=np.full((3, 5), 200, dtype=np.uint8)))
        self.addCleanup(path.unlink, missing_ok=True)
        self.assertTrue(is_temp)
        self.assertEqual(path.suffix, ".png")
        self.assertGreater(path.stat().st_size, 0)

    def test_released_raster(self) -> None:
        with self.assertRaises(BackendError):
            materialize(Raster())


if __name__ == "__main__":
    unittest.main()
