"""
Agent Backends - Shell Command Inference
========================================

The Codex CLI reports raw shell invocations instead of structured file
operations. This module recovers Read/Write/Edit operations from the
literal command string (and its aggregated output) by pattern matching:

- apply_patch blocks (Add / Update / Delete File sections)
- printf/echo appends and bare ``>>`` / ``>`` redirects
- in-place editors (``sed -i``, ``perl -pi``)
- read utilities (``cat``, ``head``, ``tail``, ``sed -n``)

Results are heuristics. Callers tag the resulting events as inferred.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable


@dataclass
class InferredToolCall:
    """A file operation recovered from a shell command."""
    tool_name: str  # Read, Write or Edit
    tool_input: Dict[str, Any] = field(default_factory=dict)
    tool_output: Optional[str] = None

    @property
    def file_path(self) -> Optional[str]:
        value = self.tool_input.get("file_path")
        return value if isinstance(value, str) else None

    @property
    def operation(self) -> str:
        value = self.tool_input.get("operation")
        return value if isinstance(value, str) else ""


# ==========================================================================
# Patterns
# ==========================================================================

_LC_DOUBLE = re.compile(r'-lc\s+"([\s\S]*)"$')
_LC_SINGLE = re.compile(r"-lc\s+'([\s\S]*)'$")

_PATCH_BLOCK = re.compile(r"\*\*\* Begin Patch[\s\S]*?\*\*\* End Patch")
_PATCH_ADD = re.compile(r"^\*\*\* Add File: (.+)$")
_PATCH_UPDATE = re.compile(r"^\*\*\* Update File: (.+)$")
_PATCH_DELETE = re.compile(r"^\*\*\* Delete File: (.+)$")

_APPEND_PATTERNS = [
    re.compile(r"\bprintf\s+(['\"])([\s\S]*?)\1\s*>>\s*([^\s;|&]+)"),
    re.compile(r"\becho\s+(['\"])([\s\S]*?)\1\s*>>\s*([^\s;|&]+)"),
]

# A single '>' that is neither part of '>>' nor an fd redirect like '2>'
_SINGLE_REDIRECT = r"(?<![0-9>])>(?!>)"

_SEGMENT_SPLIT = re.compile(r"&&|\|\||;|\|")
_IN_PLACE = [re.compile(r"\bsed\s+-i\b"), re.compile(r"\bperl\s+-pi\b")]
_TOKENS = re.compile(r"'[^']*'|\"[^\"]*\"|\S+")

_READ_PATTERNS = [
    re.compile(r"\bcat\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"\bcat\s+([^\s;|&]+)"),
    re.compile(r"\b(?:tail|head)\s+(?:-[^\s]+\s+)*['\"]([^'\"]+)['\"]"),
    re.compile(r"\b(?:tail|head)\s+(?:-[^\s]+\s+)*([^\s;|&]+)"),
    re.compile(r"\bsed\s+-n\s+['\"][^'\"]*['\"]\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"\bsed\s+-n\s+['\"][^'\"]*['\"]\s+([^\s;|&]+)"),
]

_SED_DELETE_HINT = re.compile(r"/\^?([^/$]+)\$?/d")
_PERL_UNLESS_HINT = re.compile(r"unless\s+/\^?([^/$]+)\$?/")

_OPERATOR_ONLY = re.compile(r"^[><|&]+$")
_CAPITALIZED_NAME = re.compile(r"^[A-Z][A-Za-z0-9_-]*$")
_NUMBER_WORD = re.compile(r"^(one|two|three|four|five|six|seven|eight|nine|ten)$", re.IGNORECASE)

PATCH_SUCCESS_MARKER = "Success. Updated the following files:"


# ==========================================================================
# Path helpers
# ==========================================================================

def normalize_candidate_path(value: Any) -> Optional[str]:
    """Return the token as a path if it plausibly names a file, else None."""
    if not isinstance(value, str):
        return None
    candidate = re.sub(r"^['\"]|['\"]$", "", value.strip())
    if not candidate or candidate == "/":
        return None
    if candidate[0] in "&(-":
        return None
    if _OPERATOR_ONLY.match(candidate) or candidate.isdigit():
        return None
    if not re.search(r"[/.~]", candidate) and not _CAPITALIZED_NAME.match(candidate):
        return None
    if _NUMBER_WORD.match(candidate):
        return None
    return candidate


def normalize_path_for_ui(path: str) -> Optional[str]:
    """Canonical clickable form: absolute, ./, ../ and ~ paths kept, others prefixed with ./"""
    normalized = normalize_candidate_path(path)
    if not normalized:
        return None
    if normalized.startswith(("/", "./", "../", "~")):
        return normalized
    return f"./{normalized}"


def extract_shell_command(command: str) -> str:
    """Unwrap ``/bin/zsh -lc "..."`` into the inner script."""
    match = _LC_DOUBLE.search(command)
    if match:
        return (
            match.group(1)
            .replace('\\"', '"')
            .replace("\\`", "`")
            .replace("\\$", "$")
            .replace("\\\\", "\\")
        )
    match = _LC_SINGLE.search(command)
    if match:
        return match.group(1)
    return command


def unescape_printf(text: str) -> str:
    return (
        text.replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace("\\r", "\r")
        .replace('\\"', '"')
        .replace("\\'", "'")
        .replace("\\\\", "\\")
    )


def _unescape_regex_literal(value: str) -> str:
    return (
        value.replace("\\.", ".")
        .replace("\\$", "$")
        .replace("\\^", "^")
        .replace("\\/", "/")
        .replace("\\s*", "")
        .replace("\\n", "\n")
        .strip()
    )


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


# ==========================================================================
# Extractors
# ==========================================================================

def extract_patch_operations(shell: str) -> List[InferredToolCall]:
    block = _PATCH_BLOCK.search(shell)
    if not block:
        return []

    calls: List[InferredToolCall] = []
    path: Optional[str] = None
    mode: Optional[str] = None
    old_lines: List[str] = []
    new_lines: List[str] = []

    def flush() -> None:
        if not path or not mode:
            return
        if mode == "add":
            calls.append(InferredToolCall(
                "Write", {"file_path": path, "content": "\n".join(new_lines)}, "Created file",
            ))
        elif mode == "update":
            tool_input: Dict[str, Any] = {"file_path": path}
            if old_lines or new_lines:
                tool_input["old_string"] = "\n".join(old_lines)
                tool_input["new_string"] = "\n".join(new_lines)
            calls.append(InferredToolCall("Edit", tool_input, "Updated file"))
        elif mode == "delete":
            calls.append(InferredToolCall(
                "Edit",
                {"file_path": path, "operation": "delete", "old_string": "\n".join(old_lines), "new_string": ""},
                "Deleted file",
            ))

    for line in block.group(0).split("\n"):
        header = None
        for pattern, header_mode in ((_PATCH_ADD, "add"), (_PATCH_UPDATE, "update"), (_PATCH_DELETE, "delete")):
            match = pattern.match(line)
            if match:
                header = (match.group(1).strip(), header_mode)
                break
        if header:
            flush()
            path, mode = header
            old_lines, new_lines = [], []
            continue

        if not path or not mode:
            continue
        if line.startswith("*** ") or line.startswith("@@"):
            continue
        if line.startswith("+"):
            new_lines.append(line[1:])
        elif line.startswith("-"):
            old_lines.append(line[1:])

    flush()
    return calls


def extract_append_edits(shell: str) -> List[InferredToolCall]:
    edits = []
    for pattern in _APPEND_PATTERNS:
        for match in pattern.finditer(shell):
            path = normalize_candidate_path(match.group(3))
            if not path:
                continue
            edits.append(InferredToolCall("Edit", {
                "file_path": path,
                "operation": "append",
                "old_string": "",
                "new_string": unescape_printf(match.group(2) or ""),
            }))
    return edits


def extract_redirect_targets(shell: str, operator: str) -> List[str]:
    op = ">>" if operator == ">>" else _SINGLE_REDIRECT
    quoted = re.compile(op + r"\s*['\"]([^'\"]+)['\"]")
    unquoted = re.compile(op + r"\s*([^\s;|&]+)")
    return _unique(
        normalize_candidate_path(match.group(1))
        for regex in (quoted, unquoted)
        for match in regex.finditer(shell)
    )


def _last_likely_file_path(segment: str) -> Optional[str]:
    for token in reversed(_TOKENS.findall(segment)):
        candidate = normalize_candidate_path(token)
        if candidate:
            return candidate
    return None


def _removal_hint(segment: str) -> Optional[str]:
    match = _SED_DELETE_HINT.search(segment) or _PERL_UNLESS_HINT.search(segment)
    return _unescape_regex_literal(match.group(1)) if match else None


def extract_in_place_edits(shell: str) -> List[InferredToolCall]:
    edits = []
    seen = set()
    for segment in (s.strip() for s in _SEGMENT_SPLIT.split(shell)):
        if not segment or not any(p.search(segment) for p in _IN_PLACE):
            continue
        path = _last_likely_file_path(segment)
        if not path:
            continue
        hint = _removal_hint(segment) or ""
        if (path, hint) in seen:
            continue
        seen.add((path, hint))
        edits.append(InferredToolCall("Edit", {
            "file_path": path,
            "operation": "in_place_edit",
            "old_string": hint,
            "new_string": "",
        }))
    return edits


def extract_read_targets(shell: str) -> List[str]:
    return _unique(
        normalize_candidate_path(match.group(1))
        for regex in _READ_PATTERNS
        for match in regex.finditer(shell)
    )


def extract_updated_paths(output: str) -> List[str]:
    """Paths listed by apply_patch under its success marker."""
    paths = []
    for line in output.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("Success."):
            continue
        if stripped.startswith("- "):
            paths.append(stripped[2:].strip())
    return _unique(paths)


# ==========================================================================
# Entry point
# ==========================================================================

def infer_file_operations(command: Optional[str], output: Optional[str] = None) -> List[InferredToolCall]:
    """
    Infer file operations performed by one shell command.

    Operations are deduplicated by (tool name, UI path, operation) and
    every returned call has its ``file_path`` rewritten to UI form.
    """
    if not command:
        return []

    shell = extract_shell_command(command)
    calls: List[InferredToolCall] = []
    seen = set()

    def add(call: InferredToolCall) -> None:
        ui_path = normalize_path_for_ui(call.file_path or "")
        if not ui_path:
            return
        call.tool_input["file_path"] = ui_path
        key = (call.tool_name, ui_path, call.operation)
        if key in seen:
            return
        seen.add(key)
        calls.append(call)

    for call in extract_patch_operations(shell):
        add(call)

    for call in extract_append_edits(shell):
        add(call)
    for path in extract_redirect_targets(shell, ">>"):
        add(InferredToolCall("Edit", {
            "file_path": path, "operation": "append", "old_string": "", "new_string": "",
        }))
    for path in extract_redirect_targets(shell, ">"):
        if path != "/dev/null":
            add(InferredToolCall("Write", {"file_path": path}))

    for call in extract_in_place_edits(shell):
        add(call)

    for path in extract_read_targets(shell):
        add(InferredToolCall("Read", {"file_path": path}))

    if not calls and output and PATCH_SUCCESS_MARKER in output:
        for path in extract_updated_paths(output):
            add(InferredToolCall("Edit", {"file_path": path}))

    return calls
