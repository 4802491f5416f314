"""
Main CLI application for modelbridge.

Usage:
    mb ask PROMPT [--provider NAME] [--profile NAME] [--system TEXT] [--tools FILE] [--no-stream]
    mb translate FILE [--provider NAME] [--tools FILE]
    mb providers
    mb config show|validate
    mb version
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from modelbridge import __version__
from modelbridge.config import load_config, select_provider, validate_config
from modelbridge.types import ConfigError, ModelBridgeError, Stage, TranslationError

app = typer.Typer(name="mb", help="modelbridge - one conversation model, many LLM backends")
config_app = typer.Typer(help="Configuration management")

app.add_typer(config_app, name="config")

console = Console()
_log = logging.getLogger(__name__)

_state: dict = {"config_path": None}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    if _state["config_path"] is not None:
        return _state["config_path"]
    candidates = [
        Path.cwd() / "modelbridge.yaml",
        Path.cwd() / "modelbridge.yml",
        Path.home() / ".config" / "modelbridge" / "config.yaml",
        Path.home() / ".modelbridge" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _load(profile: str | None = None, provider: str | None = None):
    cfg = load_config(_get_config_path(), profile=profile)
    if provider:
        select_provider(cfg, provider)
    return cfg


def _read_json(path: Path, what: str):
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise TranslationError(f"cannot read {what} file {path}: {exc}", stage=Stage.TRANSLATE) from exc


def _load_tools(path: Path | None):
    from modelbridge.llm.types import tool_schema_from_dict

    if path is None:
        return None
    raw = _read_json(path, "tools")
    if isinstance(raw, dict):
        raw = raw.get("tools", [])
    try:
        return [tool_schema_from_dict(t) for t in raw]
    except (KeyError, TypeError, AttributeError) as exc:
        raise TranslationError(f"malformed tool schema in {path}: {exc!r}", stage=Stage.TRANSLATE) from exc


def _load_conversation(path: Path):
    from modelbridge.llm.types import conversation_from_dict

    raw = _read_json(path, "conversation")
    tools = None
    if isinstance(raw, dict):
        tools = raw.get("tools")
        raw = raw.get("conversation", raw.get("turns", []))
    try:
        return conversation_from_dict(raw), tools
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise TranslationError(f"malformed conversation in {path}: {exc!r}", stage=Stage.TRANSLATE) from exc


def _fail(exc: ModelBridgeError) -> None:
    from modelbridge.cli.output import OutputFormatter

    OutputFormatter(console).format_error(exc)
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log requests, retries and warnings"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """modelbridge - one conversation model, many LLM backends."""
    _state["config_path"] = config
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="User message"),
    provider: Optional[str] = typer.Option(None, help="LLM provider name"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    system: Optional[str] = typer.Option(None, help="System instruction"),
    tools: Optional[Path] = typer.Option(None, "--tools", help="JSON file of tool schemas"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Wait for the complete response"),
):
    """Send one prompt and print the reply."""
    from modelbridge.cli.output import OutputFormatter
    from modelbridge.llm.router import build_router
    from modelbridge.llm.types import Conversation, GenerationOptions, Turn

    formatter = OutputFormatter(console)

    async def _run():
        cfg = _load(profile, provider)
        schemas = _load_tools(tools)
        conversation = Conversation((Turn.user(prompt),))
        options = GenerationOptions(
            temperature=cfg.llm.temperature,
            max_output_tokens=cfg.llm.max_output_tokens,
            system_instruction=system,
        )
        router = build_router(cfg)
        try:
            if no_stream:
                result = await router.complete(conversation, schemas, options, stream=False)
                if result.turn.text:
                    console.print(result.turn.text, markup=False, highlight=False)
                for call in result.tool_calls:
                    formatter.format_tool_call(call)
                formatter.format_warnings(result.warnings)
                formatter.format_result_summary(result)
                return

            async for chunk in router.stream(conversation, schemas, options):
                if chunk.text:
                    console.print(chunk.text, end="", markup=False, highlight=False)
                formatter.format_warnings(chunk.warnings)
                if chunk.done:
                    console.print()
                    for call in chunk.turn.tool_calls:
                        formatter.format_tool_call(call)
                    console.print(
                        f"[dim]{router.active_name}  {chunk.finish_reason.value}  "
                        f"prompt={chunk.usage.prompt_units} "
                        f"completion={chunk.usage.completion_units}[/dim]"
                    )
        finally:
            await router.aclose()

    try:
        asyncio.run(_run())
    except ModelBridgeError as exc:
        _fail(exc)


@app.command()
def translate(
    file: Path = typer.Argument(..., help="Conversation JSON file"),
    provider: Optional[str] = typer.Option(None, help="LLM provider name"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    tools: Optional[Path] = typer.Option(None, "--tools", help="JSON file of tool schemas"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Build the non-streaming request"),
):
    """Print the wire request a conversation translates to, without sending it."""
    from modelbridge.cli.output import OutputFormatter
    from modelbridge.llm.router import build_provider
    from modelbridge.llm.types import tool_schema_from_dict

    try:
        cfg = _load(profile, provider)
        conversation, inline_tools = _load_conversation(file)
        schemas = _load_tools(tools)
        if schemas is None and inline_tools:
            schemas = [tool_schema_from_dict(t) for t in inline_tools]
        prov = build_provider(cfg.llm)
        if prov.requires_api_key and not prov.credentials.api_key:
            # Dry run: nothing is sent, so a placeholder key is enough.
            prov = type(prov)(
                cfg.llm.model,
                "dry-run",
                cfg.llm.api_base or None,
                name=cfg.llm.name,
                max_output=cfg.llm.max_output_tokens,
            )
        request = prov.build_request(conversation, schemas, stream=not no_stream)
    except ModelBridgeError as exc:
        _fail(exc)
        return

    OutputFormatter(console).format_request(request)


@app.command()
def providers():
    """List configured providers."""
    from modelbridge.cli.output import OutputFormatter

    try:
        cfg = _load()
    except ModelBridgeError as exc:
        _fail(exc)
        return
    OutputFormatter(console).format_provider_list([cfg.llm, *cfg.provider_sections()], cfg.llm.name)


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config."""
    from modelbridge.cli.output import OutputFormatter

    try:
        cfg = _load(profile)
    except ModelBridgeError as exc:
        _fail(exc)
        return
    OutputFormatter(console).format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Validate config and report any problems."""
    config_path = _get_config_path()
    try:
        cfg = _load(profile)
        problems = validate_config(cfg)
        if problems:
            raise ConfigError("; ".join(problems))
    except ModelBridgeError as exc:
        console.print(f"[red]Config validation failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  LLM provider: {cfg.llm.name} ({cfg.llm.backend}, {cfg.llm.model})")
    console.print(f"  Retry: {cfg.retry.max_attempts} attempts, base delay {cfg.retry.base_delay_seconds}s")


@app.command()
def version():
    """Show version."""
    console.print(f"modelbridge v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
