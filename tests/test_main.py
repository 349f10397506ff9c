#!/usr/bin/env python3
"""
Test the main function and command line interface of lf.py.
"""

import logging
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path to import lf module
sys.path.insert(0, str(Path(__file__).parent.parent))
import lf  # pylint: disable=wrong-import-position

PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        # Create a temporary directory
        self.test_dir = tempfile.mkdtemp()

        self.test_file = os.path.join(self.test_dir, "a.txt")
        with open(self.test_file, "wb") as f:
            f.write(b"hello\r\nworld\r")
        self.binary_file = os.path.join(self.test_dir, "b.bin")
        with open(self.binary_file, "wb") as f:
            f.write(b"\x00\x01\x02")

    def tearDown(self) -> None:
        # Release handlers installed by main() before removing the log file
        for handler in logging.root.handlers[:]:
            handler.close()
            logging.root.removeHandler(handler)
        lf.logger.setLevel(logging.CRITICAL)
        # Clean up the temporary directory
        shutil.rmtree(self.test_dir)

    def read(self, path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    def test_main_with_args(self) -> None:
        test_args = ["lf", self.test_dir, "--no-progress"]

        with patch("sys.argv", test_args):
            result = lf.main()

        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"hello\nworld\n")
        self.assertEqual(self.read(self.binary_file), b"\x00\x01\x02")

    def test_main_defaults_to_current_directory(self) -> None:
        with patch("os.getcwd", return_value=self.test_dir):
            result = lf.main(["--no-progress"])

        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"hello\nworld\n")

    def test_main_single_file(self) -> None:
        result = lf.main([self.test_file, "--no-progress"])
        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"hello\nworld\n")

    def test_main_nonexistent_path(self) -> None:
        result = lf.main(["/nonexistent/directory", "--no-progress"])
        self.assertEqual(result, 1)

    def test_main_failure_exit_code(self) -> None:
        with patch("lf.atomic_write", side_effect=OSError("Write error")):
            with self.assertLogs("lf", level="ERROR") as logs:
                result = lf.main([self.test_dir, "--no-progress"])

        self.assertEqual(result, 1)
        self.assertEqual(self.read(self.test_file), b"hello\r\nworld\r")
        self.assertTrue(
            any("Failed" in line and "a.txt" in line for line in logs.output)
        )

    def test_main_skipped_files_exit_zero(self) -> None:
        os.remove(self.test_file)
        result = lf.main([self.test_dir, "--no-progress"])
        self.assertEqual(result, 0)

    def test_main_summary_logged(self) -> None:
        with self.assertLogs("lf", level="INFO") as logs:
            lf.main([self.test_dir, "--no-progress"])
        self.assertTrue(
            any(
                "Converted: 1, Already LF: 0, Skipped: 1, Failed: 0" in line
                for line in logs.output
            )
        )

    def test_main_workers_option(self) -> None:
        for workers in ("0", "1", "8"):
            with open(self.test_file, "wb") as f:
                f.write(b"hello\r\nworld\r")
            result = lf.main([self.test_dir, "--workers", workers, "--no-progress"])
            self.assertEqual(result, 0)
            self.assertEqual(self.read(self.test_file), b"hello\nworld\n")

    def test_main_invalid_workers_count(self) -> None:
        with patch("sys.stderr"):
            with self.assertRaises(SystemExit) as ctx:
                lf.main([self.test_dir, "--workers", "-2"])
        self.assertEqual(ctx.exception.code, 2)

    def test_main_ignore_dir(self) -> None:
        ignored = os.path.join(self.test_dir, "vendor", "x.txt")
        os.makedirs(os.path.dirname(ignored))
        with open(ignored, "wb") as f:
            f.write(b"keep\r\n")

        result = lf.main([self.test_dir, "--ignore-dir", "vendor", "--no-progress"])

        self.assertEqual(result, 0)
        self.assertEqual(self.read(ignored), b"keep\r\n")
        self.assertEqual(self.read(self.test_file), b"hello\nworld\n")

    def test_main_verbose_mode(self) -> None:
        result = lf.main([self.test_dir, "--verbose", "--no-progress"])
        self.assertEqual(result, 0)
        self.assertEqual(lf.logger.level, logging.DEBUG)

    def test_main_log_file(self) -> None:
        log_file = os.path.join(self.test_dir, "lf.log")
        result = lf.main([self.test_file, "--log-file", log_file, "--no-progress"])
        self.assertEqual(result, 0)

        for handler in logging.root.handlers:
            handler.flush()
        with open(log_file, encoding="utf-8") as f:
            self.assertIn("Converted:", f.read())

    def test_main_keyboard_interrupt(self) -> None:
        with patch("lf.run", side_effect=KeyboardInterrupt()):
            result = lf.main([self.test_dir, "--no-progress"])
        self.assertEqual(result, 130)

    def test_main_interrupted_run(self) -> None:
        interrupted = lf.AggregateResult(converted=1, interrupted=True)
        with patch("lf.run", return_value=interrupted):
            result = lf.main([self.test_dir, "--no-progress"])
        self.assertEqual(result, 130)

    def test_main_exception_handling(self) -> None:
        with patch("lf.run", side_effect=RuntimeError("Test error")):
            result = lf.main([self.test_dir, "--verbose", "--no-progress"])
        self.assertEqual(result, 1)

    def test_version_argument(self) -> None:
        with patch("sys.stdout"):
            with self.assertRaises(SystemExit) as ctx:
                lf.main(["--version"])
        self.assertEqual(ctx.exception.code, 0)

    def test_main_module_execution(self) -> None:
        result = subprocess.run(
            [sys.executable, "lf.py", "--version"],
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
            cwd=PROJECT_DIR,
        )

        self.assertEqual(result.returncode, 0)
        self.assertIn("lf v", result.stdout or result.stderr)

    def test_script_converts_directory(self) -> None:
        result = subprocess.run(
            [sys.executable, "lf.py", self.test_dir, "--no-progress"],
            capture_output=True,
            text=True,
            timeout=30,
            check=False,
            cwd=PROJECT_DIR,
        )

        self.assertEqual(result.returncode, 0)
        self.assertIn("Converted: 1", result.stderr)
        self.assertEqual(self.read(self.test_file), b"hello\nworld\n")


if __name__ == "__main__":
    unittest.main()
