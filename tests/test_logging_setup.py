import logging

from utils.logging_setup import setup_logging


def test_setup_logging_is_idempotent(tmp_path):
    log_file = tmp_path / "tracker.log"
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        setup_logging(log_file, "debug")
        setup_logging(log_file, "DEBUG")
        added = [h for h in root.handlers if h not in before]
        assert len([h for h in added if isinstance(h, logging.FileHandler)]) == 1
        assert logging.getLogger("web3").level == logging.INFO

        logging.getLogger("BotDiscovery").info("discovery tick")
        for h in added:
            h.flush()
        assert "BotDiscovery - INFO - discovery tick" in log_file.read_text()
    finally:
        for h in root.handlers[:]:
            if h not in before:
                root.removeHandler(h)
                h.close()
        root.setLevel(level)
