"""
Logging setup for the tracker process.
"""
import logging
import sys

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATEFMT = '%Y-%m-%d %H:%M:%S'

# web3 and aiohttp are chatty at DEBUG
NOISY_LOGGERS = ("web3", "urllib3", "aiohttp.access")


def _resolve_level(level) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(log_file=None, level=logging.INFO):
    """
    Route every component logger to stdout and, when `log_file` is given,
    to that file as well. Calling it again only adjusts the level and adds
    a missing file handler.

    Args:
        log_file: Optional path of an extra log file
        level: int level or level name such as "DEBUG"

    Returns:
        The root logger
    """
    level = _resolve_level(level)
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(FORMAT, datefmt=DATEFMT)

    if not any(getattr(h, "_tracker_console", False) for h in root.handlers):
        stdout = logging.StreamHandler(sys.stdout)
        stdout._tracker_console = True
        stdout.setFormatter(formatter)
        root.addHandler(stdout)

    if log_file:
        wanted = str(log_file)
        known = [h for h in root.handlers if isinstance(h, logging.FileHandler) and h.baseFilename.endswith(wanted)]
        if not known:
            try:
                handler = logging.FileHandler(wanted)
            except OSError as e:
                root.warning("Log file %s unavailable: %s", wanted, e)
            else:
                handler.setFormatter(formatter)
                root.addHandler(handler)

    for h in root.handlers:
        if getattr(h, "_tracker_console", False) or isinstance(h, logging.FileHandler):
            h.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
    return root
