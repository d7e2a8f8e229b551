"""Command-line entry point for the agentic loop."""

import asyncio
import json
import sys
from pathlib import Path

import typer
from rich.console import Console

from agentic_loop.config import Config, LoopConfig, get_config, set_config
from agentic_loop.exceptions import ConfigurationError, EndpointError, LoopAbortedError
from agentic_loop.logging import configure_logging, get_logger
from agentic_loop.loop import AgenticLoop, LoopResult
from agentic_loop.safety import DefaultSafetyPipeline
from agentic_loop.tools import ToolContext, build_default_registry

log = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use the available tools when they help "
    "answer the user's request, then reply with a concise final answer."
)

app = typer.Typer(help="Agentic Loop - run a tool-calling model loop from the shell")


def _load_config(config: str, model: str, base_url: str, max_iterations: int) -> Config:
    cfg = Config.from_yaml(Path(config)) if config else Config.load()

    overrides: dict[str, object] = {}
    if model:
        overrides["model"] = model
    if base_url:
        overrides["base_url"] = base_url
    if max_iterations:
        overrides["max_iterations"] = max_iterations
    if overrides:
        cfg.loop = LoopConfig.model_validate({**cfg.loop.model_dump(), **overrides})
    return cfg


def _result_payload(result: LoopResult) -> dict[str, object]:
    return {
        "response": result.response,
        "iterations": result.iterations,
        "hit_limit": result.hit_limit,
        "tool_calls_made": [
            {
                "tool_name": record.tool_name,
                "arguments": record.arguments,
                "output": record.output.to_llm_string(),
                "is_error": record.output.is_error,
            }
            for record in result.tool_calls_made
        ],
    }


def _print_result(console: Console, result: LoopResult) -> None:
    if result.tool_calls_made:
        console.print(f"[dim]{len(result.tool_calls_made)} tool call(s):[/dim]")
        for record in result.tool_calls_made:
            status = "[red]error[/red]" if record.output.is_error else "[green]ok[/green]"
            console.print(f"  [bold]{record.tool_name}[/bold] {json.dumps(record.arguments)} {status}")
    if result.response:
        console.print(result.response, markup=False)
    else:
        console.print("[dim](no response)[/dim]")
    suffix = " (iteration limit reached)" if result.hit_limit else ""
    console.print(f"[dim]{result.iterations} iteration(s){suffix}[/dim]")


async def _run_once(cfg: Config, system_prompt: str, message: str, workdir: Path) -> LoopResult:
    registry = build_default_registry(
        enabled=cfg.tools.enabled,
        default_timeout=cfg.tools.default_timeout,
        max_read_bytes=cfg.tools.max_read_bytes,
    )
    loop = AgenticLoop(cfg.loop, registry, safety=DefaultSafetyPipeline(cfg.safety))
    try:
        return await loop.run(system_prompt, message, ToolContext(working_dir=workdir))
    finally:
        await loop.aclose()


@app.command()
def run(
    message: str = typer.Argument(..., help="User message to send"),
    system: str = typer.Option(DEFAULT_SYSTEM_PROMPT, "-s", "--system", help="System prompt"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    base_url: str = typer.Option("", "--base-url", help="Override endpoint base URL"),
    max_iterations: int = typer.Option(0, "--max-iterations", min=0, help="Override iteration limit"),
    workdir: Path = typer.Option(Path("."), "-w", "--workdir", help="Working directory for tools"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one agentic invocation and print the final answer."""
    try:
        cfg = _load_config(config, model, base_url, max_iterations)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)

    try:
        result = asyncio.run(_run_once(cfg, system, message, workdir.expanduser().resolve()))
    except (EndpointError, LoopAbortedError) as e:
        log.error("Agentic loop failed", error=str(e))
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        log.info("Interrupted")
        raise typer.Exit(code=130)

    if as_json:
        typer.echo(json.dumps(_result_payload(result), indent=2, ensure_ascii=False))
    else:
        _print_result(Console(), result)


@app.command()
def version() -> None:
    """Show version information."""
    from agentic_loop import __version__
    typer.echo(f"Agentic Loop v{__version__}")


@app.command("show-config")
def show_config() -> None:
    """Print the effective configuration as JSON."""
    cfg = get_config()
    data = cfg.model_dump(mode="json")
    if data["loop"].get("api_key"):
        data["loop"]["api_key"] = "***"
    typer.echo(json.dumps(data, indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
