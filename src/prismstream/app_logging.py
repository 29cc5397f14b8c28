import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from platformdirs import user_log_dir


_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def log_path() -> Path:
    log_dir = Path(user_log_dir("prismstream"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "prismstream.log"


def setup_logging(*, debug: bool = False) -> Path:
    path = log_path()

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # Avoid duplicate handlers if startup path is called more than once.
    for handler in list(root.handlers):
        if isinstance(handler, RotatingFileHandler):
            existing = getattr(handler, "baseFilename", "")
            if existing and Path(existing) == path:
                return path

    handler = RotatingFileHandler(
        path,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)

    if debug:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(console)

    logging.captureWarnings(True)
    _install_thread_hook()
    logging.info(
        "Logging initialized. Python=%s log_path=%s",
        sys.version.split()[0],
        str(path),
    )
    return path


def _install_thread_hook() -> None:
    import threading

    def _thread_hook(args):
        logging.critical(
            "Unhandled thread exception in %s",
            getattr(args.thread, "name", "unknown"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    threading.excepthook = _thread_hook
