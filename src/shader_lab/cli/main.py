from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from shader_lab.config.loader import build_lab_config
from shader_lab.core.controller import IterationController, StepOutcome
from shader_lab.core.session import Session
from shader_lab.core.types import ControllerState, LabConfig
from shader_lab.domains import get_domain, list_domains
from shader_lab.domains.glsl.renderer import create_backend
from shader_lab.llm.client import LLMClient
from shader_lab.logging.history import HistoryLog
from shader_lab.logging.report import generate_history_html

console = Console()


def _attach_debug_log(session_dir: Path) -> logging.FileHandler:
    log_path = session_dir / "debug.log"
    lab_logger = logging.getLogger("shader_lab")
    lab_logger.setLevel(logging.DEBUG)
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s [%(name)s]\n%(message)s\n"))
    lab_logger.addHandler(fh)
    console.print(f"[dim]Debug log: {log_path}[/dim]")
    return fh


def _print_outcome(outcome: StepOutcome) -> None:
    table = Table(title="Evaluation")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    verdict = outcome.verdict
    table.add_row("State", outcome.state.value)
    table.add_row("Attempts", str(outcome.attempts))
    if verdict is not None:
        table.add_row("Compiled", str(verdict.compiled))
        table.add_row("Linked", str(verdict.linked))
        table.add_row("Anomaly", verdict.anomaly_reason or "none")
        table.add_row("Similarity", f"{verdict.metrics.similarity:.3f}")
        table.add_row("FPS", f"{verdict.metrics.frames_per_second:.1f}")
        table.add_row("Screenshots", str(len(verdict.evidence)))
    console.print(table)
    console.print(f"[bold]Status:[/bold] {escape(outcome.status)}")
    if verdict is not None and verdict.diagnostic_log:
        console.print(f"[dim]{escape(verdict.diagnostic_log)}[/dim]")


async def _run_session(
    config: LabConfig,
    domain: str,
    prompt: str,
    feedback: tuple[str, ...],
    verbose: bool = False,
) -> Path | None:
    history = HistoryLog(config.output_dir)
    session = Session(history=history)
    plugin = get_domain(domain)

    debug_handler = None
    if verbose:
        # Opens the session directory early; submit_prompt reuses it while empty
        history.reset()
        debug_handler = _attach_debug_log(history.session_dir)

    try:
        async with create_backend(config.renderer, config.render_width, config.render_height) as backend:
            components = plugin.create_components(config, backend)
            controller = IterationController(
                generator=LLMClient(temperature=config.temperature),
                parser=components.parser,
                evaluator=components.evaluator,
                request_builder=components.request_builder,
                config=config,
            )

            outcome = await controller.submit_prompt(session, prompt)
            _print_outcome(outcome)

            for text in feedback:
                if outcome.state is ControllerState.FATAL_ERROR:
                    break
                console.print(f"\n[bold]Feedback:[/bold] {escape(text)}")
                outcome = await controller.submit_feedback(session, text)
                _print_outcome(outcome)

        history.write_summary(session)
        if history.session_dir is not None and session.artifact:
            (history.session_dir / "final.frag").write_text(session.artifact)
        return history.session_dir
    finally:
        if debug_handler is not None:
            logging.getLogger("shader_lab").removeHandler(debug_handler)
            debug_handler.close()


@click.group()
def cli() -> None:
    """Shader Lab: generate, evaluate and refine fragment shaders with an LLM."""
    load_dotenv()


@cli.command("run")
@click.option("--prompt", default=None, help="Natural-language description of the shader")
@click.option("--preset", default=None, help="Preset prompt name (see list-presets)")
@click.option("--domain", default="glsl", help="Domain name")
@click.option("--feedback", multiple=True, help="Manual iteration feedback; repeat for more rounds")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, path_type=Path),
              help="YAML config file")
@click.option("--default-model", default=None, help="LiteLLM model string used for retries")
@click.option("--specialized-model", default=None, help="LiteLLM model string for cold start")
@click.option("--use-specialized/--no-specialized", default=None,
              help="Use the specialized model for the first generation and first manual iteration")
@click.option("--max-auto-iterations", default=None, type=int, help="Automatic retry budget")
@click.option("--max-screenshots", default=None, type=int, help="Screenshots captured per evaluation")
@click.option("--renderer", default=None, help="Render backend (playwright)")
@click.option("--output-dir", default=None, help="Output directory for session logs")
@click.option("--verbose", "-v", is_flag=True, help="Log full prompts and responses to debug.log")
def run_cmd(
    prompt: str | None,
    preset: str | None,
    domain: str,
    feedback: tuple[str, ...],
    config_path: Path | None,
    default_model: str | None,
    specialized_model: str | None,
    use_specialized: bool | None,
    max_auto_iterations: int | None,
    max_screenshots: int | None,
    renderer: str | None,
    output_dir: str | None,
    verbose: bool,
) -> None:
    """Generate a shader from a prompt and iterate until it compiles and renders."""
    if preset is not None:
        prompt = get_domain(domain).load_config("prompts", preset)["prompt"].strip()
    if not prompt:
        raise click.UsageError("Provide --prompt or --preset")

    config = build_lab_config(
        config_path,
        default_model_name=default_model,
        specialized_model_name=specialized_model,
        use_specialized_model=use_specialized,
        max_auto_iterations=max_auto_iterations,
        max_screenshots=max_screenshots,
        renderer=renderer,
        output_dir=output_dir,
    )

    console.print(f"[bold]Prompt:[/bold] {escape(prompt)}")
    console.print(f"[bold]Default model:[/bold] {config.default_model_name}")
    if config.use_specialized_model:
        console.print(f"[bold]Specialized model:[/bold] {config.specialized_model_name}")
    console.print(f"[bold]Auto-iteration budget:[/bold] {config.max_auto_iterations}")
    session_dir = asyncio.run(_run_session(config, domain, prompt, feedback, verbose))
    if session_dir is not None:
        report = generate_history_html(session_dir)
        console.print(f"\n[bold]History:[/bold] {report}")


@cli.command("compile")
@click.argument("shader_file", type=click.Path(exists=True, path_type=Path))
@click.option("--domain", default="glsl", help="Domain name")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, path_type=Path),
              help="YAML config file")
def compile_cmd(shader_file: Path, domain: str, config_path: Path | None) -> None:
    """Evaluate a hand-edited fragment shader without calling the model."""
    config = build_lab_config(config_path)

    async def _compile() -> StepOutcome:
        session = Session(history=HistoryLog())
        session.reset(shader_file.stem)
        async with create_backend(config.renderer, config.render_width, config.render_height) as backend:
            components = get_domain(domain).create_components(config, backend)
            controller = IterationController(
                generator=LLMClient(),
                parser=components.parser,
                evaluator=components.evaluator,
                request_builder=components.request_builder,
                config=config,
            )
            return await controller.manual_compile(session, shader_file.read_text())

    _print_outcome(asyncio.run(_compile()))


@cli.command("list-domains")
def list_domains_cmd() -> None:
    """List available domains."""
    table = Table(title="Available Domains")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for name in list_domains():
        plugin = get_domain(name)
        table.add_row(name, plugin.description)

    console.print(table)


@cli.command("list-presets")
@click.option("--domain", default="glsl", help="Domain name")
def list_presets_cmd(domain: str) -> None:
    """List preset prompts for a domain."""
    plugin = get_domain(domain)

    table = Table(title=f"Preset Prompts ({domain})")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for name in plugin.list_configs("prompts"):
        preset = plugin.load_config("prompts", name)
        table.add_row(name, preset.get("description", "").strip()[:80])

    console.print(table)


@cli.command("report")
@click.argument("session_dir", type=click.Path(exists=True, path_type=Path))
def report_cmd(session_dir: Path) -> None:
    """Regenerate history HTML from a session directory."""
    path = generate_history_html(session_dir)
    console.print(f"[green]History generated:[/green] {path}")


if __name__ == "__main__":
    cli()
