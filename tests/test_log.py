import logging
import re
import tempfile
import threading
import unittest
from datetime import datetime
from pathlib import Path

from imgoptimizer.log import close_logging, rotate_log, setup_logging

LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] (.*)$")


class TestRotateLog(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_file = Path(self.tmp.name) / "optimizer.log"

    def tearDown(self):
        self.tmp.cleanup()

    def test_nothing_to_rotate(self):
        self.assertIsNone(rotate_log(self.log_file))

    def test_rotates_to_timestamped_sibling(self):
        now = datetime(2024, 5, 6, 7, 8, 9)
        self.log_file.write_text("old run\n")
        rotated = rotate_log(self.log_file, now)
        self.assertEqual(rotated.name, "optimizer.log.20240506-070809")
        self.assertEqual(rotated.read_text(), "old run\n")
        self.assertFalse(self.log_file.exists())

        self.log_file.write_text("second run\n")
        again = rotate_log(self.log_file, now)
        self.assertEqual(again.name, "optimizer.log.20240506-070809(1)")
        self.assertEqual(again.read_text(), "second run\n")


class TestSetupLogging(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_file = Path(self.tmp.name) / "logs" / "optimizer.log"

    def tearDown(self):
        close_logging()
        self.tmp.cleanup()

    def lines(self):
        return self.log_file.read_text(encoding="utf-8").splitlines()

    def test_line_format(self):
        logger = setup_logging(self.log_file, console=False)
        logging.getLogger("imgoptimizer.compress").info("Optimized PNG: %s (saved %d%%)", "/srv/a.png", 42)
        close_logging()
        lines = self.lines()
        self.assertEqual(len(lines), 1)
        match = LINE.match(lines[0])
        self.assertIsNotNone(match)
        self.assertEqual(match.group(1), "Optimized PNG: /srv/a.png (saved 42%)")
        self.assertEqual(logger.level, logging.INFO)

    def test_previous_log_is_rotated(self):
        self.log_file.parent.mkdir(parents=True)
        self.log_file.write_text("previous\n")
        setup_logging(self.log_file, console=False)
        close_logging()
        siblings = [p for p in self.log_file.parent.iterdir() if p != self.log_file]
        self.assertEqual(len(siblings), 1)
        self.assertEqual(siblings[0].read_text(), "previous\n")
        self.assertTrue(self.lines()[0].endswith(f"Rotated previous log to {siblings[0]}"))

    def test_debug_only_when_verbose(self):
        setup_logging(self.log_file, verbose=False, console=False)
        logging.getLogger("imgoptimizer.tools").debug("Running: gs")
        close_logging()
        self.assertEqual(self.lines(), [])

        setup_logging(self.log_file, verbose=True, console=False)
        logging.getLogger("imgoptimizer.tools").debug("Running: gs")
        close_logging()
        self.assertEqual(len(self.lines()), 2)

    def test_concurrent_writers_never_interleave(self):
        setup_logging(self.log_file, console=False)
        logger = logging.getLogger("imgoptimizer.pipeline")

        def write(worker):
            for index in range(200):
                logger.info("worker %d message %d %s", worker, index, "x" * 100)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        close_logging()

        lines = self.lines()
        self.assertEqual(len(lines), 1600)
        for line in lines:
            match = LINE.match(line)
            self.assertIsNotNone(match)
            self.assertRegex(match.group(1), r"^worker \d message \d+ x{100}$")


if __name__ == "__main__":
    unittest.main()
