"""
Built-in Tools: the agent's hands in the local environment.

``register_builtin_tools`` registers the default tool set into a ToolRegistry:

- read            line-numbered file reading
- glob            file discovery by pattern
- write_file      write/append text files
- shell           run a shell command in the working directory
- fetch_url       HTTP GET of public web content
- tasks           an in-memory task list

Relative paths resolve against the Agent's working directory.  Handlers raise
on failure; the registry turns that into ``ExecutionFailed`` and the loop
turns it into an observation the model can react to.
"""

from __future__ import annotations

import ipaddress
import socket
import subprocess
import threading
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx
import structlog

from voxagent.tools.registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger(__name__)

DEFAULT_READ_LIMIT = 2000
MAX_SHELL_OUTPUT = 8000


def _resolve(working_dir: Path, file_path: str) -> Path:
    path = Path(file_path).expanduser()
    return path if path.is_absolute() else working_dir / path


# ---------------------------------------------------------------------------
# read / glob / write_file
# ---------------------------------------------------------------------------

def read_file(working_dir: Path, file_path: str, offset: int = 1, limit: int = DEFAULT_READ_LIMIT) -> str:
    resolved = _resolve(working_dir, file_path)
    try:
        content = resolved.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise RuntimeError(f"Failed to read {resolved}: {e}") from e

    lines = content.splitlines()
    total = len(lines)
    start = min(max(1, offset) - 1, total)
    end = min(start + max(0, limit), total)

    output = "".join(f"{number:>6}\t{line}\n" for number, line in enumerate(lines[start:end], start + 1))
    if end < total:
        output += f"\n... ({total - end} more lines, {total} total)\n"
    return output


def glob_files(working_dir: Path, pattern: str, path: Optional[str] = None) -> str:
    base = _resolve(working_dir, path) if path else working_dir
    matches = []
    for match in base.glob(pattern):
        try:
            display = match.relative_to(working_dir)
        except ValueError:
            display = match
        matches.append(str(display))
    matches.sort()
    if not matches:
        return f"No files found matching '{pattern}'"
    return "\n".join(matches) + f"\n\n({len(matches)} files found)"


def write_file(working_dir: Path, path: str, content: str, mode: str = "write") -> str:
    if mode not in ("write", "append"):
        raise ValueError(f"Unknown mode '{mode}'. Use 'write' or 'append'.")
    resolved = _resolve(working_dir, path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    with resolved.open("a" if mode == "append" else "w", encoding="utf-8") as fh:
        fh.write(content)
    verb = "Appended" if mode == "append" else "Wrote"
    return f"{verb} {len(content)} chars to {resolved}"


# ---------------------------------------------------------------------------
# shell
# ---------------------------------------------------------------------------

def run_shell(working_dir: Path, command: str, timeout: int = 30) -> str:
    timeout = max(1, min(int(timeout), 300))
    try:
        completed = subprocess.run(
            command,
            shell=True,
            cwd=str(working_dir),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(f"Command timed out after {timeout}s") from e

    parts = [f"exit code: {completed.returncode}"]
    if completed.stdout:
        parts.append(f"stdout:\n{completed.stdout}")
    if completed.stderr:
        parts.append(f"stderr:\n{completed.stderr}")
    text = "\n".join(parts)
    if len(text) > MAX_SHELL_OUTPUT:
        text = text[:MAX_SHELL_OUTPUT] + f"\n... [truncated, {len(text)} chars total]"
    return text


# ---------------------------------------------------------------------------
# fetch_url
# ---------------------------------------------------------------------------

MAX_REDIRECTS = 5
_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

Resolver = Callable[[str, int], list[str]]


def resolve_host(host: str, port: int) -> list[str]:
    """Every address ``host`` resolves to, in resolver order."""
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, proto=socket.IPPROTO_TCP)
    return list(dict.fromkeys(info[4][0] for info in infos))


def _is_blocked_ip(text: str) -> bool:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return False
    return any(
        (
            ip.is_private,
            ip.is_loopback,
            ip.is_link_local,
            ip.is_multicast,
            ip.is_reserved,
            ip.is_unspecified,
        )
    )


def _check_target(url: str, resolver: Resolver) -> Optional[str]:
    """Return an error message if ``url`` may not be fetched, else None."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return "Error: URL must start with http:// or https://"
    if parsed.username or parsed.password:
        return "Error: URLs with embedded credentials are not allowed."
    host = (parsed.hostname or "").rstrip(".").lower()
    if not host:
        return "Error: URL must include a valid hostname."
    if host == "localhost" or _is_blocked_ip(host):
        return "Error: URL target is blocked by network safety policy."

    try:
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        addresses = resolver(host, port)
    except (OSError, ValueError) as e:
        return f"Could not resolve {url}: {e}"
    if not addresses:
        return f"Could not resolve {url}: no addresses."
    if any(_is_blocked_ip(address) for address in addresses):
        logger.warning("builtin_tools.fetch_blocked", host=host, addresses=addresses)
        return "Error: URL target is blocked by network safety policy."
    return None


def fetch_url(
    client: httpx.Client,
    url: str,
    max_chars: int = 4000,
    resolver: Resolver = resolve_host,
) -> str:
    max_chars = max(100, min(int(max_chars), 20000))
    byte_limit = min(max(16_384, max_chars * 6), 1_000_000)

    current = url
    for _ in range(MAX_REDIRECTS + 1):
        error = _check_target(current, resolver)
        if error:
            return error
        try:
            with client.stream("GET", current, follow_redirects=False) as response:
                location = response.headers.get("Location")
                if response.status_code in _REDIRECT_STATUSES and location:
                    current = urllib.parse.urljoin(current, location)
                    continue
                if response.status_code >= 400:
                    return f"HTTP {response.status_code} error fetching {current}: {response.reason_phrase}"

                raw = bytearray()
                for chunk in response.iter_bytes():
                    raw.extend(chunk)
                    if len(raw) > byte_limit:
                        break
                content_type = response.headers.get("Content-Type", "")
                encoding = response.charset_encoding or "utf-8"
        except httpx.TimeoutException:
            return f"Could not reach {current}: timed out"
        except httpx.HTTPError as e:
            return f"Could not reach {current}: {e}"

        truncated = len(raw) > byte_limit
        text = bytes(raw[:byte_limit]).decode(encoding, errors="replace")
        if len(text) > max_chars:
            text = text[:max_chars]
            truncated = True
        if truncated:
            text += f"\n\n[Truncated, showing first {max_chars} chars]"
        return f"URL: {current}\nContent-Type: {content_type}\n\n{text}"

    return f"Error: too many redirects fetching {url}"


# ---------------------------------------------------------------------------
# tasks
# ---------------------------------------------------------------------------

_TASK_STATUSES = ("pending", "in_progress", "completed")
_STATUS_ICONS = {"completed": "[x]", "in_progress": "[~]"}


@dataclass
class TaskItem:
    id: int
    subject: str
    description: str = ""
    status: str = "pending"


class TaskList:
    """In-memory task list backing the ``tasks`` tool."""

    def __init__(self) -> None:
        self._tasks: list[TaskItem] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def handle(
        self,
        action: str,
        subject: Optional[str] = None,
        description: Optional[str] = None,
        task_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> str:
        if action == "create":
            with self._lock:
                task = TaskItem(
                    id=self._next_id,
                    subject=subject or "Untitled task",
                    description=description or "",
                )
                self._next_id += 1
                self._tasks.append(task)
            return f"Created task #{task.id}: {task.subject}"

        if action == "update":
            if task_id is None:
                raise ValueError("Missing task_id for update")
            if status not in _TASK_STATUSES:
                raise ValueError(f"Missing or invalid status for update: {status!r}")
            with self._lock:
                task = next((t for t in self._tasks if t.id == task_id), None)
                if task is None:
                    raise ValueError(f"Task #{task_id} not found")
                task.status = status
            return f"Updated task #{task_id} '{task.subject}' → {status}"

        if action == "list":
            with self._lock:
                tasks = list(self._tasks)
            if not tasks:
                return "No tasks."
            lines = ["Tasks:"]
            for task in tasks:
                icon = _STATUS_ICONS.get(task.status, "[ ]")
                lines.append(f"  #{task.id} {icon} {task.subject} - {task.status}")
                if task.description:
                    lines.append(f"       {task.description}")
            return "\n".join(lines) + "\n"

        raise ValueError(f"Unknown action: {action}. Use 'create', 'update', or 'list'.")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register_builtin_tools(
    registry: ToolRegistry,
    working_dir: Path,
    http_client: Optional[httpx.Client] = None,
    resolver: Resolver = resolve_host,
) -> TaskList:
    """Register every built-in tool.  Returns the TaskList backing ``tasks``.

    ``resolver`` maps a host and port to its addresses; ``fetch_url`` refuses
    any hop whose addresses include a private or loopback one.
    """
    client = http_client or httpx.Client(
        timeout=10.0,
        follow_redirects=False,
        headers={"User-Agent": "voxagent/1.0"},
    )
    task_list = TaskList()

    registry.register(
        ToolDefinition(
            name="read",
            description=(
                "Read a file's contents with line numbers. Returns the file content "
                "formatted with line numbers."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to read (absolute or relative to working directory)",
                    },
                    "offset": {
                        "type": "integer",
                        "description": "Line number to start reading from (1-based, default: 1)",
                    },
                    "limit": {
                        "type": "integer",
                        "description": f"Maximum number of lines to read (default: {DEFAULT_READ_LIMIT})",
                    },
                },
                "required": ["file_path"],
            },
            handler=lambda file_path, offset=1, limit=DEFAULT_READ_LIMIT: read_file(
                working_dir, file_path, offset, limit
            ),
            category="filesystem",
        )
    )

    registry.register(
        ToolDefinition(
            name="glob",
            description=(
                'Find files matching a glob pattern (e.g. "**/*.py", "src/*.md"). '
                "Returns matching file paths."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": 'Glob pattern to match files (e.g. "**/*.py")',
                    },
                    "path": {
                        "type": "string",
                        "description": "Base directory to search in (default: working directory)",
                    },
                },
                "required": ["pattern"],
            },
            handler=lambda pattern, path=None: glob_files(working_dir, pattern, path),
            category="filesystem",
        )
    )

    registry.register(
        ToolDefinition(
            name="write_file",
            description=(
                "Write or append content to a file. Creates parent directories if needed."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Absolute or relative path to the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The text content to write to the file.",
                    },
                    "mode": {
                        "type": "string",
                        "enum": ["write", "append"],
                        "description": "Write mode: 'write' (overwrite) or 'append'. Default 'write'.",
                    },
                },
                "required": ["path", "content"],
            },
            handler=lambda path, content, mode="write": write_file(working_dir, path, content, mode),
            category="filesystem",
        )
    )

    registry.register(
        ToolDefinition(
            name="shell",
            description=(
                "Run a shell command in the working directory and return its exit "
                "code, stdout and stderr. Use for quick inspections, not long-running jobs."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The command line to run."},
                    "timeout": {
                        "type": "integer",
                        "description": "Timeout in seconds (default 30, max 300).",
                    },
                },
                "required": ["command"],
            },
            handler=lambda command, timeout=30: run_shell(working_dir, command, timeout),
            category="system",
        )
    )

    registry.register(
        ToolDefinition(
            name="fetch_url",
            description=(
                "Fetch content from a URL using HTTP GET. Use this to retrieve web pages, "
                "REST API responses or plain-text files. Returns the response body as text."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "url": {
                        "type": "string",
                        "description": "The full URL to fetch (must start with http:// or https://).",
                    },
                    "max_chars": {
                        "type": "integer",
                        "description": "Maximum characters to return. Default 4000.",
                    },
                },
                "required": ["url"],
            },
            handler=lambda url, max_chars=4000: fetch_url(client, url, max_chars, resolver),
            category="web",
        )
    )

    registry.register(
        ToolDefinition(
            name="tasks",
            description=(
                "Manage an in-memory task list. Actions: create (new task), update "
                "(change status), list (show all tasks)."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "action": {
                        "type": "string",
                        "enum": ["create", "update", "list"],
                        "description": "Action to perform: 'create', 'update', or 'list'",
                    },
                    "subject": {"type": "string", "description": "Task subject/title (for create)"},
                    "description": {"type": "string", "description": "Task description (for create)"},
                    "task_id": {"type": "integer", "description": "Task ID (for update)"},
                    "status": {
                        "type": "string",
                        "enum": list(_TASK_STATUSES),
                        "description": "New status (for update)",
                    },
                },
                "required": ["action"],
            },
            handler=task_list.handle,
            category="planning",
        )
    )

    logger.info("builtin_tools.registered", working_dir=str(working_dir))
    return task_list
