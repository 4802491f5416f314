"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from modelbridge.config import LLMProviderConfig
from modelbridge.llm.providers.base import ProviderRequest
from modelbridge.llm.types import AssembledTurn, FinishReason, ToolCall
from modelbridge.types import ModelBridgeError, StreamDataQualityWarning

FINISH_COLORS = {
    FinishReason.STOP: "green",
    FinishReason.MAX_OUTPUT_REACHED: "yellow",
    FinishReason.CONTENT_FILTERED: "red",
    FinishReason.OTHER: "magenta",
}


class OutputFormatter:
    """Rich-based output formatting for the ``mb`` CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_provider_list(self, sections: list[LLMProviderConfig], active: str) -> None:
        table = Table(title="Configured Providers", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Backend", no_wrap=True)
        table.add_column("Model")
        table.add_column("API base")
        table.add_column("Key env", no_wrap=True)

        for s in sections:
            name = Text(s.name, style="bold cyan" if s.name == active else "cyan")
            if s.name == active:
                name.append(" *", style="green")
            table.add_row(name, s.backend, s.model, s.api_base or "[dim]default[/dim]", s.api_key_env)

        self.console.print(table)

    def format_tool_call(self, call: ToolCall) -> None:
        args_str = json.dumps(call.arguments, indent=2, default=str)
        self.console.print(f"[bold yellow]tool call[/bold yellow] {call.name} [dim]({call.id})[/dim]")
        self.console.print(Syntax(args_str, "json", theme="monokai"))

    def format_warnings(self, warnings: list[StreamDataQualityWarning]) -> None:
        for w in warnings:
            self.console.print(f"[yellow]warning:[/yellow] {escape(str(w))}")

    def format_result_summary(self, result: AssembledTurn) -> None:
        color = FINISH_COLORS.get(result.finish_reason, "white")
        usage = result.usage
        self.console.print(
            f"[dim]{result.provider or '?'}[/dim]  "
            f"[{color}]{result.finish_reason.value}[/{color}]  "
            f"[dim]prompt={usage.prompt_units} completion={usage.completion_units}[/dim]"
        )
        dropped = result.metadata.get("dropped_tool_result_ids")
        if dropped:
            self.console.print(f"[yellow]dropped orphaned results:[/yellow] {', '.join(dropped)}")
        if result.metadata.get("discarded_history"):
            self.console.print("[yellow]history discarded (orphaned tool results)[/yellow]")

    def format_request(self, request: ProviderRequest) -> None:
        header = f"[bold]{request.method}[/bold] {request.path}"
        if request.params:
            header += "?" + "&".join(f"{k}={v}" for k, v in request.params.items())
        details = [header, f"[dim]backend:[/dim] {request.backend}", f"[dim]stream:[/dim] {request.stream}"]
        if request.dropped_tool_result_ids:
            details.append(
                f"[dim]dropped results:[/dim] [yellow]{', '.join(request.dropped_tool_result_ids)}[/yellow]"
            )
        if request.discarded_history:
            details.append("[dim]history:[/dim] [yellow]discarded[/yellow]")
        self.console.print(Panel("\n".join(details), title="Wire request"))
        self.console.print(Syntax(json.dumps(request.body, indent=2, default=str), "json", theme="monokai"))

    def format_config(self, config: dict) -> None:
        rendered = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(rendered, "json", theme="monokai"))

    def format_error(self, exc: ModelBridgeError) -> None:
        self.console.print(f"[red]{type(exc).__name__}:[/red] {escape(str(exc))}")
        cause = exc.__cause__
        if cause is not None:
            self.console.print(f"  [dim]caused by {type(cause).__name__}: {escape(str(cause))}[/dim]")
