import logging
from pathlib import Path
from typing import Optional


# third-party loggers that flood INFO during anndata/zarr IO and MSigDB downloads
_QUIET_LOGGERS = ("h5py", "fsspec", "numcodecs", "urllib3", "anndata")


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Route the root logger to stderr and, optionally, to `logfile`.

    Previously installed root handlers are removed first, so repeated
    pipeline runs in one interpreter do not duplicate lines.
    """
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]
    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
