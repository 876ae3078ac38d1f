import logging
from pathlib import Path
from typing import Optional

# Third-party loggers that are chatty at INFO during per-gene fits
_NOISY_LOGGERS = ("numba", "h5py", "statsmodels")


def init_logging(
    logfile: Optional[Path] = None,
    level: int = logging.INFO,
    capture_warnings: bool = True,
) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.

    With capture_warnings=True, warnings.warn() messages (e.g. "no markers
    found" for a group, or a parallel -> sequential downgrade) are routed
    through the 'py.warnings' logger so they also reach the logfile.
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
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(bool(capture_warnings))
