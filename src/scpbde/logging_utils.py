import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Third-party loggers that flood INFO output during model fitting
_NOISY_LOGGERS = ("numba", "matplotlib", "fontTools", "h5py", "PIL")


def init_logging(logfile: Optional[Path] = None, level: Union[int, str] = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed so repeated CLI invocations do not
    duplicate output.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level!r}")

    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(int(level), logging.WARNING))
