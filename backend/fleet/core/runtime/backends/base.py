"""
Agent Backends - Base Adapter
=============================

Abstract protocol adapter between an external agent CLI and the
normalized event schema. Each backend knows how to:

- build the argument vector for a run
- parse one raw output line into zero or more NormalizedEvents
- extract the resumable session id
- format text for injection on stdin (when the CLI supports it)
"""

import json
import os
import platform
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any, Union

import structlog

from fleet.core.config import settings
from fleet.core.runtime.agents import AgentBackend, CodexOptions, PermissionMode
from fleet.core.runtime.events import NormalizedEvent

logger = structlog.get_logger()


# ==========================================================================
# Run Configuration
# ==========================================================================

@dataclass
class RunConfig:
    """Everything needed to launch one agent process."""
    agent_id: str
    prompt: str
    cwd: str
    backend: AgentBackend = AgentBackend.CLAUDE
    session_id: Optional[str] = None
    model: Optional[str] = None
    permission_mode: PermissionMode = PermissionMode.BYPASS
    use_chrome: bool = False
    system_prompt: Optional[str] = None
    codex: CodexOptions = field(default_factory=CodexOptions)
    force_new_session: bool = False
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def resume_session_id(self) -> Optional[str]:
        if self.force_new_session:
            return None
        return self.session_id


def sanitize_text(text: str) -> str:
    """Drop lone surrogates that cannot be encoded as JSON/UTF-8."""
    return text.encode("utf-8", errors="replace").decode("utf-8")


def decode_line(line: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    """Decode one line of line-delimited JSON; None when it is not a JSON object."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


# ==========================================================================
# Adapter Interface
# ==========================================================================

class AgentAdapter(ABC):
    """Abstract adapter for one external agent CLI."""

    backend: AgentBackend
    executable_name: str = ""

    def __init__(self, data_dir: Optional[Path] = None, executable: Optional[str] = None):
        self.data_dir = Path(data_dir) if data_dir else settings.FLEET_DATA_DIR
        self._executable = executable

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    def build_args(self, config: RunConfig) -> List[str]:
        """Build the CLI argument vector (without the executable)."""
        pass

    @abstractmethod
    def _parse(self, event: Dict[str, Any]) -> List[NormalizedEvent]:
        """Translate one decoded raw event."""
        pass

    @abstractmethod
    def extract_session_id(self, event: Dict[str, Any]) -> Optional[str]:
        """Return the session id carried by this raw event, if any."""
        pass

    @abstractmethod
    def requires_stdin_input(self) -> bool:
        """True when prompts (and follow-ups) are delivered on stdin."""
        pass

    @abstractmethod
    def install_paths(self) -> List[Path]:
        """Platform-specific locations to probe for the executable."""
        pass

    def format_stdin_input(self, text: str) -> str:
        """Wire format for one message written to stdin."""
        return sanitize_text(text)

    def initial_stdin(self, config: RunConfig) -> Optional[str]:
        """Message written to stdin right after spawn, if the prompt travels that way."""
        if self.requires_stdin_input():
            return self.format_stdin_input(config.prompt)
        return None

    def parse_event(self, raw: Union[str, bytes, Dict[str, Any]]) -> List[NormalizedEvent]:
        """
        Parse one raw line (or an already decoded event).

        Never raises: malformed, non-object or unknown events yield [].
        """
        event = raw if isinstance(raw, dict) else decode_line(raw)
        if event is None:
            return []
        try:
            return self._parse(event)
        except Exception as e:
            logger.debug(
                "Dropped unparseable event",
                backend=self.backend.value,
                event_type=event.get("type"),
                error=str(e),
            )
            return []

    # ------------------------------------------------------------------
    # Executable discovery
    # ------------------------------------------------------------------

    def configured_executable(self) -> Optional[str]:
        return self._executable

    def detect_installation(self) -> Optional[str]:
        """Probe PATH and known install locations."""
        found = shutil.which(self.executable_name)
        if found:
            return found
        for candidate in self.install_paths():
            if candidate.exists():
                return str(candidate)
        return None

    def get_executable_path(self) -> str:
        return self.configured_executable() or self.detect_installation() or self.executable_name

    def build_command(self, config: RunConfig) -> List[str]:
        return [self.get_executable_path(), *self.build_args(config)]

    # ------------------------------------------------------------------
    # Scratch files
    # ------------------------------------------------------------------

    def write_scratch_file(self, relative: str, content: str) -> Path:
        """
        Write injected instruction text to a file under the data dir.

        Multi-line prompts are passed to the CLI by path, never inline.
        """
        path = self.data_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug("Wrote scratch file", path=str(path), chars=len(content))
        return path

    def write_prompt_file(self, agent_id: str, content: str) -> Path:
        return self.write_scratch_file(f"prompts/prompt-{agent_id}.md", content)

    @staticmethod
    def is_windows() -> bool:
        return platform.system() == "Windows"

    @staticmethod
    def home() -> Path:
        return Path(os.path.expanduser("~"))
