"""CLI runner for storyreel.

Usage:
    python -m storyreel story "<title>" [--language English]
    python -m storyreel produce <project> [--mode images|video]
    python -m storyreel subtitles <project>
    python -m storyreel render <project>
    python -m storyreel run "<title>"
    python -m storyreel probe <file>
    python -m storyreel plan <project>
    python -m storyreel history [--clear]
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

console = Console()

_DEFAULT_CONFIG = "config.yaml"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)


def _load_settings(ctx: click.Context):
    from storyreel.config import load_settings

    try:
        return load_settings(ctx.obj["config"])
    except (FileNotFoundError, ValueError, TypeError) as exc:
        console.print(f"[red]Config error: {exc}[/red]")
        sys.exit(1)


def _open_project(path: str):
    from storyreel.errors import ResourceMissing
    from storyreel.project import Project

    try:
        return Project.open(path)
    except ResourceMissing as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)


def _make_pipeline(settings):
    from storyreel.pipeline import Pipeline

    return Pipeline(settings, progress=lambda msg: console.print(f"  [dim]{msg}[/dim]"))


def _print_result(result) -> None:
    table = Table(title="Pipeline", show_lines=True)
    table.add_column("Stage", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Artifact / message")
    for stage in result.stages:
        status = "[green]done[/green]" if stage.ok else f"[red]{stage.error_kind}[/red]"
        detail = str(stage.artifact_path or "") if stage.ok else stage.message
        if stage.ok and stage.message:
            detail = f"{detail} ({stage.message})" if detail else stage.message
        table.add_row(stage.stage, status, detail)
    console.print(table)
    if result.success:
        console.rule("[bold green]Pipeline Complete[/bold green]")
    else:
        console.rule("[bold red]Pipeline Failed[/bold red]")
        console.print(f"[red]{result.error}[/red]")


def _media_request(language: str, mode: str, background: str | None, no_subtitles: bool):
    from storyreel.pipeline import MediaRequest

    return MediaRequest(
        language=language,
        visual_mode=mode,
        background_video=Path(background) if background else None,
        subtitles=False if no_subtitles else None,
    )


_media_options = [
    click.option("--language", "-l", default="English", show_default=True, help="Narration language"),
    click.option("--mode", type=click.Choice(["images", "video"]), default="images", show_default=True),
    click.option("--background", type=click.Path(exists=True, dir_okay=False),
                 help="Background video for --mode video"),
    click.option("--no-subtitles", is_flag=True, help="Skip transcription and burn-in"),
]


def media_options(func):
    for option in reversed(_media_options):
        func = option(func)
    return func


@click.group()
@click.option("--config", "-c", default=_DEFAULT_CONFIG, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool) -> None:
    """storyreel: narrated story videos from a title."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    _setup_logging(verbose)


# ------------------------------------------------------------------
# story
# ------------------------------------------------------------------

@cli.command("story")
@click.argument("title")
@click.option("--language", "-l", default="English", show_default=True)
@click.option("--name", "project_name", help="Project folder name (defaults to the title)")
@click.option("--length", help="Target length placeholder value")
@click.option("--one-part", is_flag=True, help="Ask for the whole story in one reply")
@click.pass_context
def cmd_story(ctx: click.Context, title: str, language: str, project_name: str | None,
              length: str | None, one_part: bool) -> None:
    """Generate story.txt and description.txt in a new project folder."""
    from storyreel.pipeline import StoryRequest

    settings = _load_settings(ctx)
    pipeline = _make_pipeline(settings)
    request = StoryRequest(title=title, language=language, project_name=project_name,
                           length=length, one_part=one_part or None)

    console.rule("[bold blue]Story[/bold blue]")
    result = asyncio.run(pipeline.generate_story(request))
    if not result.ok:
        console.print(f"[red]Story failed ({result.error_kind}): {result.message}[/red]")
        sys.exit(1)
    console.print(f"[green]Story saved: {result.artifact_path}[/green]")
    if result.message:
        console.print(f"[yellow]{result.message}[/yellow]")


# ------------------------------------------------------------------
# produce / subtitles / render
# ------------------------------------------------------------------

@cli.command("produce")
@click.argument("project")
@media_options
@click.pass_context
def cmd_produce(ctx: click.Context, project: str, language: str, mode: str,
                background: str | None, no_subtitles: bool) -> None:
    """Script -> visuals -> audio -> subtitles -> video for an existing story."""
    settings = _load_settings(ctx)
    proj = _open_project(project)
    pipeline = _make_pipeline(settings)

    console.rule(f"[bold blue]Produce: {proj.name}[/bold blue]")
    result = asyncio.run(pipeline.produce(proj, _media_request(language, mode, background, no_subtitles)))
    _print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command("subtitles")
@click.argument("project")
@click.option("--language", "-l", default="English", show_default=True)
@click.pass_context
def cmd_subtitles(ctx: click.Context, project: str, language: str) -> None:
    """Transcribe audio.mp3 and rebuild subtitles.ass."""
    settings = _load_settings(ctx)
    proj = _open_project(project)
    result = asyncio.run(_make_pipeline(settings).make_subtitles(proj, language, enabled=True))
    if not result.ok:
        console.print(f"[red]Subtitles failed ({result.error_kind}): {result.message}[/red]")
        sys.exit(1)
    console.print(f"[green]Subtitles: {result.artifact_path}[/green]")


@cli.command("render")
@click.argument("project")
@click.option("--mode", type=click.Choice(["images", "video"]), default="images", show_default=True)
@click.pass_context
def cmd_render(ctx: click.Context, project: str, mode: str) -> None:
    """Render video.mp4 from the project's existing artifacts."""
    settings = _load_settings(ctx)
    proj = _open_project(project)
    result = asyncio.run(_make_pipeline(settings).render(proj, mode))
    if not result.ok:
        console.print(f"[red]Render failed ({result.error_kind}): {result.message}[/red]")
        sys.exit(1)
    console.print(f"[green]Video: {result.artifact_path}[/green]")


# ------------------------------------------------------------------
# run (story + produce)
# ------------------------------------------------------------------

@cli.command("run")
@click.argument("title")
@click.option("--name", "project_name", help="Project folder name (defaults to the title)")
@click.option("--one-part", is_flag=True, help="Ask for the whole story in one reply")
@media_options
@click.pass_context
def cmd_run(ctx: click.Context, title: str, project_name: str | None, one_part: bool,
            language: str, mode: str, background: str | None, no_subtitles: bool) -> None:
    """Full pipeline: story -> produce."""
    from storyreel.pipeline import StoryRequest

    settings = _load_settings(ctx)
    pipeline = _make_pipeline(settings)
    story = StoryRequest(title=title, language=language, project_name=project_name, one_part=one_part or None)

    console.rule("[bold blue]Story -> Video[/bold blue]")
    result = asyncio.run(pipeline.run(story, _media_request(language, mode, background, no_subtitles)))
    _print_result(result)
    if not result.success:
        sys.exit(1)


# ------------------------------------------------------------------
# probe / plan
# ------------------------------------------------------------------

@cli.command("probe")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def cmd_probe(ctx: click.Context, file: str) -> None:
    """Print the duration ffprobe reports for an audio file."""
    from storyreel.probe import probe_duration

    settings = _load_settings(ctx)
    console.print(f"{probe_duration(file, settings.ffprobe):.2f}s")


@cli.command("plan")
@click.argument("project")
@click.pass_context
def cmd_plan(ctx: click.Context, project: str) -> None:
    """Show the slideshow slots for a project's images and audio."""
    from storyreel.errors import ResourceMissing
    from storyreel.video import plan_for_project

    settings = _load_settings(ctx)
    proj = _open_project(project)
    try:
        plan = plan_for_project(proj, settings)
    except (ResourceMissing, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)

    table = Table(title=f"Slideshow [{proj.name}]", show_lines=False)
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Image")
    table.add_column("Duration", justify="right")
    table.add_column("Fade in at", justify="right")
    for slot in plan.slots:
        offset = plan.offsets[slot.index - 1] if slot.index else None
        table.add_row(
            str(slot.index),
            slot.image_path.name,
            f"{slot.display_duration:.1f}s",
            f"{offset:.1f}s" if offset is not None else "[dim]-[/dim]",
        )
    console.print(table)
    console.print(
        f"Audio {plan.audio_duration:.1f}s, timeline {plan.timeline_duration:.1f}s, "
        f"{len(plan.slots)} slot(s)"
    )


# ------------------------------------------------------------------
# history
# ------------------------------------------------------------------

@cli.command("history")
@click.option("--clear", is_flag=True, help="Forget all recorded projects")
@click.pass_context
def cmd_history(ctx: click.Context, clear: bool) -> None:
    """List recently generated projects."""
    from storyreel.project import clear_history, load_history

    settings = _load_settings(ctx)
    if clear:
        clear_history(settings.output_dir)
        console.print("[green]History cleared.[/green]")
        return

    entries = load_history(settings.output_dir)
    if not entries:
        console.print("[yellow]No projects yet.[/yellow]")
        return

    table = Table(title="History", show_lines=True)
    table.add_column("Date", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Path")
    for entry in entries:
        table.add_row(entry.get("date", ""), entry.get("title", ""), entry.get("path", ""))
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
