from __future__ import annotations

import logging
import os
from pathlib import Path


def setup_logging(level: str, logfile: str | None = None):
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Clear existing handlers to avoid duplicates across repeated runs in one process.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s")

    if logfile:
        path = Path(logfile).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        # keep the previous run's log next to the new one
        if path.exists():
            os.replace(path, path.with_name(path.name + ".1"))
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(log_level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    # urllib3 is chatty at DEBUG about every connection
    logging.getLogger("urllib3").setLevel(max(log_level, logging.INFO))

    root.debug("logging initialized")
