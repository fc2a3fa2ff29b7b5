import logging
import tempfile
import unittest
from pathlib import Path

from common.log import setup_logging


class TestSetupLogging(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        self._saved = (root.level, list(root.handlers))

    def tearDown(self) -> None:
        root = logging.getLogger()
        for h in root.handlers:
            if h not in self._saved[1]:
                h.close()
        root.setLevel(self._saved[0])
        root.handlers[:] = self._saved[1]

    def test_log_file_is_appended(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log_file = Path(td) / "state" / "switcher.log"
            log_file.parent.mkdir()
            log_file.write_text("previous run\n", encoding="utf-8")

            setup_logging("debug", log_file)
            logging.getLogger("switcher.test").debug("Listening on %s", "/tmp/x")
            for h in logging.getLogger().handlers:
                h.flush()

            text = log_file.read_text(encoding="utf-8")
            self.assertTrue(text.startswith("previous run\n"))
            self.assertIn("DEBUG [switcher.test] Listening on /tmp/x", text)

    def test_unknown_level_falls_back_to_info(self) -> None:
        setup_logging("chatty")
        self.assertEqual(logging.getLogger().level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
