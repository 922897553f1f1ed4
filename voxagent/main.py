"""
voxagent: text front end for the agent runtime.

Interactive REPL on a terminal, one-shot when stdin is piped:

    voxagent --base-url http://localhost:8080/v1 --model gpt-oss-20b
    echo "what files are here?" | voxagent --model-path ./model.gguf

REPL commands: /reset, /history, /quit.

With --serve-mcp the tool surface is served to other MCP clients instead:

    voxagent --base-url http://localhost:8080/v1 --serve-mcp stdio
    voxagent --base-url http://localhost:8080/v1 --serve-mcp http --port 8765
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import click
import structlog
from rich.console import Console
from rich.markup import escape

from voxagent.errors import AgentError

_REDACTED_KEYS = ("content", "user_input", "text", "prompt")
_MAX_FIELD_LEN = 80

_logging_configured = False

console = Console()


def _redact_user_content(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Truncate user-content fields so conversations never land in logs in full."""
    for key in _REDACTED_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > _MAX_FIELD_LEN:
            event_dict[key] = value[:_MAX_FIELD_LEN] + "... [truncated]"
    return event_dict


def configure_logging(level: str = "WARNING") -> None:
    """Configure stdlib logging and structlog.  Later calls are no-ops."""
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_user_content,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def _print_response(response: Any, show_reasoning: bool) -> None:
    if show_reasoning and response.reasoning_trace:
        console.print(f"[dim]{escape(response.reasoning_trace)}[/dim]")
    console.print(escape(response.content))
    if response.exhausted:
        console.print(f"[yellow](stopped after {response.iterations} steps)[/yellow]")


def _run_repl(agent: Any, verbose: bool) -> None:
    console.print("[bold]voxagent[/bold] ready. Commands: /reset, /history, /quit")
    while True:
        try:
            line = console.input("[bold cyan]you>[/bold cyan] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            return
        if not line:
            continue
        if line == "/quit":
            return
        if line == "/reset":
            agent.reset()
            console.print("[dim]Conversation cleared.[/dim]")
            continue
        if line == "/history":
            console.print_json(agent.get_conversation_history())
            continue
        try:
            _print_response(agent.step(line), verbose)
        except AgentError as exc:
            console.print(f"[red]Error:[/red] {escape(str(exc))}")


@click.command()
@click.option("--model-path", type=click.Path(dir_okay=False), help="Local GGUF model file")
@click.option("--base-url", help="Remote API base URL (e.g. http://localhost:8080/v1)")
@click.option("--model", help="Model name for the remote API")
@click.option("--working-dir", type=click.Path(file_okay=False), help="Directory file tools operate in")
@click.option("--max-iterations", type=int, help="ReAct iteration cap")
@click.option(
    "--serve-mcp",
    type=click.Choice(["stdio", "http"]),
    help="Serve the tool surface over MCP instead of chatting",
)
@click.option("--port", type=int, default=8765, show_default=True, help="Port for --serve-mcp http")
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level and show reasoning")
def main(
    model_path: Optional[str],
    base_url: Optional[str],
    model: Optional[str],
    working_dir: Optional[str],
    max_iterations: Optional[int],
    serve_mcp: Optional[str],
    port: int,
    verbose: bool,
) -> None:
    """Talk to the agent runtime from a terminal."""
    configure_logging("INFO" if verbose else "WARNING")

    from voxagent.agent import Agent

    overrides: dict[str, Any] = {
        key: value
        for key, value in {
            "model_path": model_path,
            "base_url": base_url,
            "model": model,
            "working_dir": working_dir,
            "max_iterations": max_iterations,
        }.items()
        if value is not None
    }

    try:
        agent = Agent.new(**overrides)
    except AgentError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise SystemExit(2) from exc

    with agent:
        if serve_mcp == "stdio":
            agent.mcp_server().serve()
            return
        if serve_mcp == "http":
            from voxagent.tools.mcp.server import run_http

            run_http(agent.mcp_server(), port=port)
            return
        if sys.stdin.isatty():
            _run_repl(agent, verbose)
            return
        text = sys.stdin.read().strip()
        if not text:
            return
        try:
            _print_response(agent.step(text), verbose)
        except AgentError as exc:
            console.print(f"[red]Error:[/red] {escape(str(exc))}")
            raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
