# display.py
# All terminal output for the Ferrox engine.
#
# This module owns presentation entirely. agent.py, chain.py and
# orchestrator.py never format strings for the terminal; they call named
# functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan     orchestration / routing events
#   blue     model calls and responses
#   yellow   chain stage boundaries
#   green    success / delivered replies
#   red      failures, halts, limits
#   magenta  action dispatch internals (request / result)

import json
from typing import TYPE_CHECKING

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ferrox.models import ActionInvocationRequest, ActionResult

if TYPE_CHECKING:
    from ferrox.agent import AgentRun

console = Console()


def set_enabled(enabled: bool) -> None:
    """Silence or restore all output. Library callers and tests turn it off."""
    console.quiet = not enabled


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Orchestrator entry
# ---------------------------------------------------------------------------


def banner(chains: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Ferrox[/bold cyan]\n"
            "[dim]Multi-agent orchestration: decide → act → format[/dim]\n\n"
            f"[dim]Chains :[/dim] [white]{', '.join(chains)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def message_received(conversation_id: str, text: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]INBOUND · {conversation_id}[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{text}[/white]",
            title=_label("MESSAGE", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def chain_start(name: str, stages: list[str]) -> None:
    console.print()
    console.print(
        _label("ORCHESTRATOR", "cyan"),
        f"[cyan] → Running chain[/cyan] [bold white]{name}[/bold white]"
        f" [dim]({' → '.join(stages)})[/dim]",
    )


# ---------------------------------------------------------------------------
# Chain stages
# ---------------------------------------------------------------------------


def stage_start(index: int, total: int, agent: str, model: str) -> None:
    console.print()
    console.print(Rule(f"[yellow]STAGE [{index + 1}/{total}] · {agent}[/yellow]", style="yellow"))
    console.print(f"  [dim yellow]model={model}[/dim yellow]")


def stage_failed(index: int, agent: str, reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Stage {index + 1} ({agent}) failed.[/bold red]\n"
            f"[white]{reason}[/white]\n"
            "[dim]Later stages will not run.[/dim]",
            title=_label("CHAIN SHORT-CIRCUIT ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def chain_summary(runs: list["AgentRun"]) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Stage", justify="center", width=6)
    table.add_column("Agent", width=16)
    table.add_column("State", justify="center", width=10)
    table.add_column("Calls", justify="center", width=6)
    table.add_column("Output", style="dim white")

    for index, run in enumerate(runs):
        state = (
            "[bold green]done[/bold green]" if run.ok else f"[bold red]{run.state.value}[/bold red]"
        )
        table.add_row(
            str(index + 1),
            run.agent,
            state,
            str(run.model_calls),
            _mono(run.output or (str(run.error) if run.error else ""), 60),
        )

    console.print(
        Panel(
            table,
            title="[dim]CHAIN SUMMARY[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Invocation loop
# ---------------------------------------------------------------------------


def model_call(agent: str, iteration: int, limit: int) -> None:
    console.print(
        f"  [blue]↳ {agent}[/blue] [dim]awaiting model ({iteration}/{limit})…[/dim]"
    )


def final_message(agent: str, text: str) -> None:
    console.print(f"  [bold green]✓ {agent} done[/bold green]  [dim white]{_mono(text, 140)}[/dim white]")


def actions_requested(agent: str, requests: list[ActionInvocationRequest]) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    table.add_column("#", justify="center", width=3)
    table.add_column("Action", style="bold white", width=22)
    table.add_column("Args", style="dim white", width=40)
    table.add_column("Correlation", style="dim", width=18)

    for index, request in enumerate(requests):
        table.add_row(
            str(index + 1),
            request.action,
            _mono(json.dumps(request.arguments, default=str), 38),
            request.correlation_id,
        )

    console.print(f"  [magenta]{agent} requested {len(requests)} action(s)[/magenta]")
    console.print(table)


def action_result(result: ActionResult) -> None:
    if result.ok:
        tag = "[bold yellow]preview[/bold yellow]" if result.preview else "[bold green]ok[/bold green]"
        body = json.dumps(result.value, default=str)
    else:
        tag = f"[bold red]{result.error.kind.value}[/bold red]"
        body = result.error.detail
    console.print(
        f"  [magenta]Result[/magenta]  [bold white]{result.action}[/bold white]"
        f" [dim]{result.correlation_id}[/dim]  {tag}  [white]{_mono(body, 100)}[/white]"
    )


def iteration_limit(agent: str, limit: int) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{agent} hit its iteration bound ({limit} model calls).[/bold red]\n"
            "[dim]The loop is terminated to guarantee progress.[/dim]",
            title=_label("ITERATION LIMIT ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def model_failed(agent: str, reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Model back-end failed for {agent}.[/bold red]\n[white]{reason}[/white]",
            title=_label("MODEL ERROR ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Reply
# ---------------------------------------------------------------------------


def reply_sent(text: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{text}[/white]",
            title=_label("REPLY", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
