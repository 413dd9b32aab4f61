"""
Agent Fleet - Process Scanner Tests
===================================

Runs against a fake /proc tree.
"""

import os
import signal
from pathlib import Path
from typing import List

import pytest

from fleet.core.runtime.process_scan import ProcessScanner


def add_process(proc_root: Path, pid: int, argv: List[str], cwd: Path) -> None:
    entry = proc_root / str(pid)
    entry.mkdir(parents=True)
    (entry / "cmdline").write_bytes(b"\0".join(arg.encode() for arg in argv) + b"\0")
    os.symlink(str(cwd), entry / "cwd")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def scanner(tmp_path: Path, project: Path) -> ProcessScanner:
    proc_root = tmp_path / "proc"
    other = tmp_path / "other"
    other.mkdir()
    add_process(proc_root, 900001, ["/usr/local/bin/claude", "--print"], project)
    add_process(proc_root, 900002, ["node", "/usr/lib/node_modules/codex/bin/codex.js", "exec"], project)
    add_process(proc_root, 900003, ["/usr/bin/claude"], other)
    add_process(proc_root, 900004, ["vim", "claude.md"], project)
    (proc_root / "self").mkdir()

    scanner = ProcessScanner(proc_root=proc_root)
    scanner.system = "Linux"
    return scanner


class TestProcessScanner:
    """Tests for working-directory based process lookup."""

    async def test_list_processes_by_executable(self, scanner: ProcessScanner):
        """Only agent CLIs match, including interpreter-launched scripts."""
        pids = sorted(p.pid for p in await scanner.list_processes())
        assert pids == [900001, 900002, 900003]

    async def test_list_single_backend(self, scanner: ProcessScanner):
        """Executable names narrow the match."""
        pids = sorted(p.pid for p in await scanner.list_processes(["codex"]))
        assert pids == [900002]

    async def test_find_in_cwd(self, scanner: ProcessScanner, project: Path):
        """Processes are matched by working directory, ignoring a trailing slash."""
        found = await scanner.find_processes_in_cwd(str(project) + "/")
        assert sorted(p.pid for p in found) == [900001, 900002]
        assert all(p.cwd == str(project) for p in found)

    async def test_find_excludes_tracked_pids(self, scanner: ProcessScanner, project: Path):
        """Tracked processes are not orphans."""
        found = await scanner.find_processes_in_cwd(str(project), exclude_pids=[900001])
        assert [p.pid for p in found] == [900002]

    async def test_kill_in_cwd(self, scanner: ProcessScanner, project: Path, monkeypatch: pytest.MonkeyPatch):
        """Every matching process is signalled; vanished ones are skipped."""
        sent = []

        def fake_kill(pid, sig):
            if pid == 900002:
                raise ProcessLookupError(pid)
            sent.append((pid, sig))

        monkeypatch.setattr("fleet.core.runtime.process_scan.os.kill", fake_kill)
        killed = await scanner.kill_processes_in_cwd(str(project))
        assert killed == [900001]
        assert sent == [(900001, signal.SIGTERM)]

    async def test_windows_not_inspected(self, scanner: ProcessScanner):
        """No process inspection on Windows."""
        scanner.system = "Windows"
        assert await scanner.list_processes() == []
