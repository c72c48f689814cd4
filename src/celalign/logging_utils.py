import logging
from pathlib import Path
from typing import Iterable, Optional

# Third-party loggers that are chatty at INFO during PCA / UMAP / Leiden
NOISY_LOGGERS = ("numba", "umap", "pynndescent", "h5py", "fsspec")


def init_logging(
    logfile: Optional[Path] = None,
    level: int = logging.INFO,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing root handlers are removed (Typer re-entry installs duplicates),
    and the loggers listed in `quiet` are capped at WARNING.
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

    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
