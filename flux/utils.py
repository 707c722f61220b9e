"""Utility functions for the provisioning tool."""
import logging
import os
import platform
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def command_exists(command: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def get_real_user() -> str:
    """Get the real username (handles sudo)."""
    return os.environ.get('SUDO_USER', os.environ.get('USER', ''))


def current_platforms() -> frozenset:
    """Platform tags for this host, e.g. {'linux', 'ubuntu', 'debian'}."""
    tags = {platform.system().lower()}
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        return frozenset(tags)
    tags.add(release.get('ID', '').lower())
    tags.update(part.lower() for part in release.get('ID_LIKE', '').split())
    tags.discard('')
    return frozenset(tags)


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")


def log_warn(message: str) -> None:
    """Log a warning message."""
    print(f"[WARN] {message}")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None, log_level: str = "info") -> None:
    """Setup logging configuration for the flux logger hierarchy."""
    root = logging.getLogger('flux')
    root.setLevel(logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
    root.addHandler(console)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            log_warn(f"Cannot write log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
            root.addHandler(file_handler)
    root.propagate = False


def backup_file(path: Union[str, Path]) -> Path:
    """Copy a file to a timestamped backup next to it."""
    path = Path(path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = path.with_name(f"{path.name}.backup_{timestamp}")
    shutil.copy2(path, backup_path)
    log_action(f"Backed up {path} to {backup_path}")
    return backup_path


@contextmanager
def backed_up(path: Union[str, Path]) -> Iterator[Optional[Path]]:
    """Back up a file before mutating it; restore the backup if the block raises.

    Yields the backup path, or None when the file did not exist yet (in which
    case a failed block removes whatever it created).
    """
    path = Path(path)
    backup = backup_file(path) if path.exists() else None
    try:
        yield backup
    except BaseException:
        if backup is not None:
            shutil.copy2(backup, path)
            logger.warning("Restored %s from %s", path, backup)
        elif path.exists():
            path.unlink()
            logger.warning("Removed partially written %s", path)
        raise
