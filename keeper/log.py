"""
Dirkeeper - Supervisor Logger
===============================
Dual-output logger used by every lifecycle component: writes to per-day
log files AND (optionally) broadcasts via WebSocket to the management
console.

Controller operations run in worker threads, so broadcasts are scheduled
onto the console's event loop with run_coroutine_threadsafe, never awaited
directly.

Log files are stored as <log_dir>/YYYY-MM-DD.log, one line per entry:
    [14:02:11] [INFO] Starting LDAP server configuration.
"""

import asyncio
import os
from datetime import datetime
from typing import Any


class SupervisorLogger:
    """
    Logger for the lifecycle core.

    Attributes:
        log_dir:    Directory for per-day log files (None disables files).
        ws_manager: Console fan-out, or None before the app starts.
        verbose:    Echo debug lines to the terminal as well.
    """

    def __init__(
        self,
        log_dir: str | None = None,
        ws_manager: Any = None,
        event_loop: asyncio.AbstractEventLoop | None = None,
        verbose: bool = False,
        echo: bool = True,
    ):
        """
        Args:
            log_dir:    Directory path for log files (created if missing).
            ws_manager: Anything with an async broadcast(message).
            event_loop: The console's asyncio event loop (for thread-safe broadcast).
            verbose:    Print debug lines to the terminal.
            echo:       Print to the terminal at all (tests turn this off).
        """
        self.log_dir = log_dir
        self.ws_manager = ws_manager
        self.verbose = verbose
        self.echo = echo
        self._loop = event_loop

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    def attach(self, ws_manager: Any, event_loop: asyncio.AbstractEventLoop) -> None:
        """Start broadcasting to console clients (called once the loop is running)."""
        self.ws_manager = ws_manager
        self._loop = event_loop

    # -- Output channels -------------------------------------------------------

    def _get_log_path(self) -> str:
        today = datetime.now().strftime("%Y-%m-%d")
        return os.path.join(self.log_dir, f"{today}.log")

    def _write(self, text: str) -> None:
        """Append a line to today's log file."""
        if not self.log_dir:
            return
        try:
            with open(self._get_log_path(), "a", encoding="utf-8") as f:
                f.write(text + "\n")
        except OSError:
            pass

    def _broadcast(self, msg_type: str, data: dict) -> None:
        """Fire-and-forget broadcast from whatever thread we are on."""
        if not self.ws_manager or not self._loop or self._loop.is_closed():
            return
        try:
            asyncio.run_coroutine_threadsafe(
                self.ws_manager.broadcast({"type": msg_type, "data": data}),
                self._loop,
            )
        except RuntimeError:
            pass  # loop shutting down

    def _emit(self, level: str, text: str, show: bool = True) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        line = f"[{ts}] [{level}] {text}"
        self._write(line)
        if show and self.echo:
            print(line, flush=True)
        self._broadcast("log", {"text": line, "level": level.lower()})
        return line

    def tail(self, lines: int = 100) -> dict[str, Any]:
        """
        Last lines of the newest log file in log_dir.

        Returns:
            {"file": "2026-01-02.log", "lines": [...], "total": 812}, with
            file None when there is nothing to read.
        """
        names = []
        if self.log_dir and os.path.isdir(self.log_dir):
            names = sorted(n for n in os.listdir(self.log_dir) if n.endswith(".log"))
        if not names:
            return {"file": None, "lines": [], "total": 0}
        try:
            with open(os.path.join(self.log_dir, names[-1]), "r", encoding="utf-8", errors="replace") as f:
                content = f.read().splitlines()
        except OSError:
            return {"file": None, "lines": [], "total": 0}
        return {"file": names[-1], "lines": content[-lines:], "total": len(content)}

    # -- Levels ----------------------------------------------------------------

    def debug(self, text: str) -> None:
        """Diagnostic detail. Only printed when verbose."""
        self._emit("DEBUG", text, show=self.verbose)

    def info(self, text: str) -> None:
        self._emit("INFO", text)

    def warning(self, text: str, exc: BaseException | None = None) -> None:
        """Log a recoverable problem, optionally with the exception that caused it."""
        if exc is not None:
            text = f"{text} ({type(exc).__name__}: {exc})"
        self._emit("WARN", text)

    def error(self, text: str, exc: BaseException | None = None) -> None:
        if exc is not None:
            text = f"{text} ({type(exc).__name__}: {exc})"
        self._emit("ERROR", text)

    def status(self, state: str, details: dict | None = None) -> None:
        """
        Broadcast a lifecycle state change to the console.

        Args:
            state:   New state name (e.g. "running").
            details: Extra fields merged into the status payload.
        """
        data = {"status": state}
        if details:
            data.update(details)
        self._write(f"[{datetime.now().strftime('%H:%M:%S')}] [STATE] {state}")
        self._broadcast("status", data)
