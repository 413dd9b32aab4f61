"""
Agent Runtime - OS Process Inspection
=====================================

Finds live agent CLI processes by working directory. Used to detect
processes that survived an orchestrator restart without being
re-attached (orphans), and to clean them up on an explicit stop.

Linux reads ``/proc`` directly; macOS falls back to ``ps`` and
``lsof -a -d cwd``. Windows is not inspected.
"""

import asyncio
import os
import platform
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Iterable, Tuple

import structlog

logger = structlog.get_logger()


DEFAULT_EXECUTABLES = ("claude", "codex")
COMMAND_TIMEOUT_SECONDS = 5.0


@dataclass
class ProcessInfo:
    """A live process matched by executable name."""
    pid: int
    command: str
    cwd: Optional[str] = None


def _normalize_dir(path: str) -> str:
    return path.rstrip("/") or "/"


def _executable_matches(argv: List[str], names: Iterable[str]) -> bool:
    """True when argv[0] (or the script run by an interpreter) is one of ``names``."""
    wanted = set(names)
    for token in argv[:2]:
        base = os.path.basename(token)
        for suffix in (".exe", ".cmd", ".js", ".mjs"):
            if base.endswith(suffix):
                base = base[: -len(suffix)]
        if base in wanted:
            return True
    return False


async def _run(*args: str, timeout: float = COMMAND_TIMEOUT_SECONDS) -> str:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        raise
    return stdout.decode("utf-8", errors="replace")


class ProcessScanner:
    """Working-directory based lookup of agent CLI processes."""

    def __init__(self, proc_root: Path = Path("/proc")):
        self.proc_root = proc_root
        self.system = platform.system()

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_processes(self, executable_names: Iterable[str] = DEFAULT_EXECUTABLES) -> List[ProcessInfo]:
        names = tuple(executable_names)
        if self.system == "Windows":
            return []
        if self.proc_root.is_dir():
            candidates = self._scan_proc()
        else:
            candidates = await self._scan_ps()

        own_pid = os.getpid()
        return [
            ProcessInfo(pid=pid, command=" ".join(argv))
            for pid, argv in candidates
            if pid != own_pid and _executable_matches(argv, names)
        ]

    def _scan_proc(self) -> List[Tuple[int, List[str]]]:
        results = []
        for entry in self.proc_root.iterdir():
            if not entry.name.isdigit():
                continue
            try:
                raw = (entry / "cmdline").read_bytes()
            except OSError:
                continue
            argv = [part.decode("utf-8", errors="replace") for part in raw.split(b"\0") if part]
            if argv:
                results.append((int(entry.name), argv))
        return results

    async def _scan_ps(self) -> List[Tuple[int, List[str]]]:
        try:
            output = await _run("ps", "-axo", "pid=,command=")
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("Process listing failed", error=str(e))
            return []
        results = []
        for line in output.splitlines():
            parts = line.strip().split()
            if len(parts) >= 2 and parts[0].isdigit():
                results.append((int(parts[0]), parts[1:]))
        return results

    async def get_process_cwd(self, pid: int) -> Optional[str]:
        if self.proc_root.is_dir():
            try:
                return os.readlink(self.proc_root / str(pid) / "cwd")
            except OSError:
                return None
        try:
            output = await _run("lsof", "-a", "-d", "cwd", "-p", str(pid), "-Fn", timeout=2.0)
        except (OSError, asyncio.TimeoutError):
            return None
        for line in output.splitlines():
            if line.startswith("n"):
                return line[1:]
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_processes_in_cwd(
        self,
        cwd: str,
        executable_names: Iterable[str] = DEFAULT_EXECUTABLES,
        exclude_pids: Iterable[int] = (),
    ) -> List[ProcessInfo]:
        """Live agent processes whose working directory is ``cwd``."""
        target = _normalize_dir(cwd)
        excluded = set(exclude_pids)
        matches = []
        for info in await self.list_processes(executable_names):
            if info.pid in excluded:
                continue
            process_cwd = await self.get_process_cwd(info.pid)
            if process_cwd and _normalize_dir(process_cwd) == target:
                info.cwd = process_cwd
                matches.append(info)
        if matches:
            logger.debug("Found agent processes in cwd", cwd=cwd, pids=[m.pid for m in matches])
        return matches

    async def kill_processes_in_cwd(
        self,
        cwd: str,
        executable_names: Iterable[str] = DEFAULT_EXECUTABLES,
        exclude_pids: Iterable[int] = (),
        sig: signal.Signals = signal.SIGTERM,
    ) -> List[int]:
        """Signal every matching process; returns the pids that were signalled."""
        signalled = []
        for info in await self.find_processes_in_cwd(cwd, executable_names, exclude_pids):
            try:
                os.kill(info.pid, sig)
                signalled.append(info.pid)
            except ProcessLookupError:
                continue
            except PermissionError as e:
                logger.warning("Cannot signal process", pid=info.pid, error=str(e))
        if signalled:
            logger.info("Signalled untracked agent processes", cwd=cwd, pids=signalled, signal=sig.name)
        return signalled
