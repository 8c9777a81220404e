# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
# ------------------------------------------------------------------------------

"""
Job logging.

Every process of a job (orchestrator, command server, autotest, backend)
configures its own handlers. With file logging enabled each one writes a
single ZIP archive:

    <log_root>/main/main_<timestamp>.log.zip
    <log_root>/autotest/autotest_<timestamp>.log.zip
    <log_root>/backend/backend_<timestamp>.log.zip
"""

from __future__ import annotations

import atexit, logging, os, threading, zipfile
import multiprocessing as mp
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
LOG_NAMESPACE = "autoinst"
DEFAULT_LOGGING_SETTINGS = {
    "level": "WARNING",
    "to_console": True,
    "to_file": False,
}
# HTTP request lines of the broadcast client and the command server
_CHATTY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_atexit_hooked = False


def _with_defaults(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(DEFAULT_LOGGING_SETTINGS)
    if isinstance(settings, dict):
        merged.update(settings)
    return merged


def is_file_logging_enabled(settings: Optional[Dict[str, Any]]) -> bool:
    """Return True when the job keeps ZIP log archives."""
    return bool(_with_defaults(settings)["to_file"])


def configure_logging(
    settings: Optional[Dict[str, Any]] = None,
    base_path: Optional[str | Path] = None,
    log_filename_prefix: Optional[str] = None,
) -> None:
    """
    Replace the root handlers of this process according to ``settings``.

    settings keys:
        - level: threshold for the ``autoinst`` loggers (default WARNING)
        - to_console: log to stderr (default True)
        - to_file: write ``<prefix>_<timestamp>.log`` into a ZIP archive
          below ``base_path`` (default False)
    """
    settings = _with_defaults(settings)
    level = getattr(logging, str(settings["level"]).upper(), logging.WARNING)

    handlers: list[logging.Handler] = []
    if settings["to_console"]:
        console = logging.StreamHandler()
        console.setLevel(level)
        handlers.append(console)
    if settings["to_file"]:
        if base_path is None:
            base_path = Path.cwd() / "logs" / mp.current_process().name
        archive_path, member = _archive_location(base_path, log_filename_prefix)
        # the root logger filters; the archive keeps whatever reaches it
        handlers.append(_CompressedLogHandler(archive_path, member))
    if not handlers:
        handlers.append(logging.NullHandler())

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    logging.getLogger(LOG_NAMESPACE).setLevel(level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _hook_atexit()


def _archive_location(base_path: str | Path, prefix: Optional[str]) -> Tuple[Path, str]:
    """Create the log folder; return the archive path and its member name."""
    log_dir = Path(base_path).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    member = f"{prefix}_{stamp}.log" if prefix else f"{stamp}.log"
    return log_dir / f"{member}.zip", member


def get_logger(component: str) -> logging.Logger:
    """Return logger autoinst.<component>."""
    component = component.strip(".")
    return logging.getLogger(f"{LOG_NAMESPACE}.{component}" if component else LOG_NAMESPACE)


class _CompressedLogHandler(logging.Handler):
    """
    Streams log lines into a single member of a ZIP archive.

    Until the handler is closed the archive lives at ``<archive>.tmp``; a job
    killed mid-run leaves the temporary file behind, never a truncated
    archive under the final name.
    """

    terminator = b"\n"

    def __init__(self, archive_path: Path, member: str):
        super().__init__()
        self._archive_path = archive_path
        self._temp_path = archive_path.with_name(f"{archive_path.name}.tmp")
        self._lock = threading.RLock()
        self._closed = False
        try:
            self._zip = zipfile.ZipFile(
                self._temp_path, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
            )
            self._stream = self._zip.open(member, mode="w")
        except OSError:
            self._zip = self._stream = None

    @property
    def archive_path(self) -> Path:
        return self._archive_path

    def emit(self, record):
        if self._stream is None:
            return
        try:
            line = self.format(record).encode("utf-8") + self.terminator
            with self._lock:
                self._stream.write(line)
                self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self):
        with self._lock:
            if not self._closed:
                self._closed = True
                self._finish_archive()
        super().close()

    def _finish_archive(self) -> None:
        if self._zip is None:
            return
        try:
            self._stream.close()
            self._zip.close()
            os.replace(self._temp_path, self._archive_path)
        except (OSError, ValueError):
            pass
        self._zip = self._stream = None


def initialize_process_logging(log_specs: Optional[Dict[str, Any]], process_name: str) -> None:
    """Configure logging at the entry of a supervised child process.

    ``log_specs`` carries ``settings`` and ``log_root``; the child logs into
    ``<log_root>/<process_name>/`` when file logging is enabled.
    """
    log_specs = log_specs or {}
    settings = log_specs.get("settings")
    log_root = log_specs.get("log_root")
    base_path = Path(log_root) / process_name if log_root and is_file_logging_enabled(settings) else None
    # drop the handlers inherited from the parent through fork
    shutdown_logging()
    configure_logging(settings, base_path=base_path, log_filename_prefix=process_name)


def shutdown_logging() -> None:
    """Flush, close and detach every root handler."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        try:
            handler.flush()
            handler.close()
        except (OSError, ValueError):
            pass
        root.removeHandler(handler)


def _hook_atexit() -> None:
    global _atexit_hooked
    if not _atexit_hooked:
        atexit.register(shutdown_logging)
        _atexit_hooked = True
