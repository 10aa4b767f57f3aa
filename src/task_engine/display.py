# display.py
# Terminal rendering of the orchestrator's event stream.
#
# The engine never formats output; run.py feeds each Event to render(),
# which dispatches to one function per event name.
#
# Colour language:
#   cyan: loop scaffolding (start, steps, observation)
#   blue: tool calls and raw results
#   magenta: formatted and streamed model output
#   green: success
#   red: errors and aborts

import json
from typing import Any, Callable

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from task_engine.models import Event

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _plain(value: Any) -> str:
    """Payload text made safe for markup strings."""
    return escape(str(value))


def _mono(value: Any, max_len: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > max_len:
        text = text[:max_len] + "…"
    return escape(text)


# ---------------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------------


def execution_start(payload: dict) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    services = _plain(", ".join(payload.get("services") or []) or "none")
    console.print(
        Panel(
            f"[white]{_plain(payload['goal'])}[/white]\n\n"
            f"[dim]Services       :[/dim] [white]{services}[/white]\n"
            f"[dim]Max iterations :[/dim] [white]{payload.get('max_iterations')}[/white]",
            title=_label("GOAL", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def task_execution_complete(payload: dict) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="white")
    table.add_row("Steps", str(payload.get("steps")))
    table.add_row("Iterations", str(payload.get("iterations")))
    table.add_row("Complete", str(payload.get("is_complete")))
    if payload.get("abort_reason"):
        table.add_row("Stopped", f"[red]{_plain(payload['abort_reason'])}[/red]")

    ok = payload.get("success")
    console.print(
        Panel(
            table,
            title=_label("TASK SUCCEEDED ✓" if ok else "TASK FINISHED WITH ERRORS ✗", "green" if ok else "red"),
            border_style="green" if ok else "red",
            padding=(0, 1),
        )
    )
    console.print()


def task_execution_error(payload: dict) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{_plain(payload.get('error_type'))}: {_plain(payload.get('error'))}[/bold white]",
            title=_label("TASK ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def step_start(payload: dict) -> None:
    where = f" @ {_plain(payload['service'])}" if payload.get("service") else ""
    console.print()
    console.print(
        f"[bold cyan]  STEP {payload['step']}[/bold cyan]  "
        f"[bold white]{_plain(payload.get('tool') or '<reselect>')}[/bold white][dim]{where}[/dim]"
    )
    if payload.get("reasoning"):
        console.print(f"  [dim]{_mono(payload['reasoning'], 200)}[/dim]")


def step_executing(payload: dict) -> None:
    console.print(f"  [blue]Call[/blue]     [dim]{_mono(payload.get('args') or {}, 140)}[/dim]")


def step_raw_result(payload: dict) -> None:
    console.print(f"  [blue]Result[/blue]   [white]{_mono(payload.get('result'), 140)}[/white]")
    for note in payload.get("notes") or []:
        console.print(f"  [yellow]Note[/yellow]     [dim]{_plain(note)}[/dim]")


def step_result_chunk(payload: dict) -> None:
    # chunks are shown whole in step_formatted_result
    return None


def step_formatted_result(payload: dict) -> None:
    console.print(
        Panel(
            f"[white]{_plain(payload.get('formatted') or '')}[/white]",
            title=_label(f"STEP {payload['step']} OUTPUT", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def step_complete(payload: dict) -> None:
    if payload.get("success"):
        console.print(f"  [bold green]✓ Step {payload['step']} complete[/bold green]")
    else:
        console.print(f"  [bold red]✗ Step {payload['step']} failed[/bold red]")


def step_error(payload: dict) -> None:
    details = payload.get("details") or {}
    body = f"[white]{_plain(payload.get('error'))}[/white]\n\n" f"[dim]Strategy:[/dim] {_plain(payload.get('strategy'))}"
    body += f"  [dim]attempt {payload.get('attempt')}[/dim]"
    for suggestion in details.get("suggestions") or []:
        body += f"\n[dim]• {_plain(suggestion)}[/dim]"
    console.print(
        Panel(
            body,
            title=_label(details.get("title") or "STEP ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def tool_connection_error(payload: dict) -> None:
    details = payload.get("details") or {}
    action = "[bold]Action required.[/bold] " if details.get("requires_user_action") else ""
    console.print(
        Panel(
            f"{action}[white]{_plain(payload.get('error'))}[/white]\n"
            f"[dim]Service:[/dim] {_plain(payload.get('service'))}  "
            f"[dim]Retryable:[/dim] {details.get('retryable')}",
            title=_label(f"CONNECTION: {details.get('kind', 'unknown').upper()}", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def observation_complete(payload: dict) -> None:
    if payload.get("is_complete"):
        console.print(f"  [green]Observer[/green] [white]goal satisfied[/white]  [dim]{_mono(payload.get('reasoning', ''))}[/dim]")
    else:
        nxt = payload.get("next_objective") or "continue"
        console.print(f"  [cyan]Observer[/cyan] [white]{_mono(nxt)}[/white]")


# ---------------------------------------------------------------------------
# Final answer
# ---------------------------------------------------------------------------

_final_started = False


def final_result_chunk(payload: dict) -> None:
    global _final_started
    if not _final_started:
        console.print()
        console.print(Rule("[green]ANSWER[/green]", style="green"))
        _final_started = True
    console.print(payload.get("chunk", ""), end="", markup=False, highlight=False)


def _end_final(payload: dict) -> None:
    global _final_started
    if _final_started:
        console.print()
        _final_started = False


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

HANDLERS: dict[str, Callable[[dict], None]] = {
    "execution_start": execution_start,
    "step_start": step_start,
    "step_executing": step_executing,
    "step_raw_result": step_raw_result,
    "step_result_chunk": step_result_chunk,
    "step_formatted_result": step_formatted_result,
    "step_complete": step_complete,
    "step_error": step_error,
    "tool_connection_error": tool_connection_error,
    "observation_complete": observation_complete,
    "final_result_chunk": final_result_chunk,
    "task_execution_complete": task_execution_complete,
    "task_execution_error": task_execution_error,
}


def render(event: Event) -> None:
    if event.name in ("task_execution_complete", "task_execution_error"):
        _end_final(event.payload)
    handler = HANDLERS.get(event.name)
    if handler is not None:
        handler(event.payload)
