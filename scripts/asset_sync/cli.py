"""
Command-line interface for asset sync.
Provides commands for syncing a project, one-off uploads and manifest inspection.
"""

import json
import os
from pathlib import Path
from typing import Optional
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import SyncConfig, ConfigurationError, CONFIG_FILENAME
from .pipeline import SyncPipeline, PipelineError, SyncResult
from .providers import host_registry
from .providers.base import HostError
from .processing.manifest import ManifestCorruptError, ManifestStore
from .processing.uploader import BackoffPolicy, JobStatus, UploadJob, UploadOrchestrator

# Initialize typer app and rich console
app = typer.Typer(
    name="asset-sync",
    help="Incremental image asset sync - pack spritesheets, upload changed images and generate Lua modules",
    add_completion=False,
    rich_markup_mode="rich",
    epilog="""
[bold]Examples:[/bold]
  [cyan]asset-sync sync[/cyan]                                  Sync the project in the current folder
  [cyan]asset-sync sync --config game/asset-sync.toml[/cyan]    Sync another project
  [cyan]asset-sync upload-image logo.png --name Logo[/cyan]     Upload one image and print its id
  [cyan]asset-sync asset-list[/cyan]                            List uploaded asset ids
  [cyan]asset-sync create-path-map paths.json[/cyan]            Map asset ids to the files using them

[bold]Environment Variables:[/bold]
  Use [cyan]asset-sync config --env-vars[/cyan] to see all available variables.
    """
)
# Diagnostics go to stderr so stdout stays machine-readable
console = Console(stderr=True)


@app.command()
def sync(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Project file or folder"),
    host: Optional[str] = typer.Option(None, "--host", help="Override the configured asset host"),
    prune: bool = typer.Option(False, "--prune", help="Drop manifest entries for inputs that no longer exist"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")
):
    """Sync changed inputs to the asset host and regenerate Lua modules."""
    console.print("[bold blue]Syncing assets...[/bold blue]")

    try:
        config = _load_config(config_file)
        if host:
            config.host.type = host

        errors = config.validate()
        if errors:
            console.print("[red]Configuration validation errors:[/red]")
            for error in errors:
                console.print(f"  • {error}")
            raise typer.Exit(1)

        result = SyncPipeline(config, prune=prune, verbose=verbose).run()

    except (PipelineError, ConfigurationError, OSError, ValueError) as e:
        console.print(f"[red]Sync failed:[/red] {e}")
        raise typer.Exit(1)

    _display_sync_summary(result)

    if result.aborted:
        console.print("[red]✗ Sync aborted: upload retry budget exhausted. Re-run to resume.[/red]")
    elif result.failures:
        console.print(f"[red]✗ Sync finished with {len(result.failures)} failures[/red]")
    else:
        console.print("[green]✓ Sync completed successfully![/green]")

    if result.exit_code:
        raise typer.Exit(result.exit_code)


@app.command("upload-image")
def upload_image(
    path: Path = typer.Argument(..., help="Image file to upload"),
    name: str = typer.Option(..., "--name", "-n", help="Display name for the uploaded asset"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Project file or folder"),
    host: Optional[str] = typer.Option(None, "--host", help="Override the configured asset host"),
):
    """Upload a single image outside the manifest and print its asset id."""
    try:
        data = path.read_bytes()
    except OSError as e:
        console.print(f"[red]Cannot read {path}:[/red] {e}")
        raise typer.Exit(1)

    try:
        config = _load_config(config_file)
        host_type = host or config.host.type
        asset_host = host_registry.create_host(host_type, dict(config.host.options))
    except (ConfigurationError, HostError, OSError, ValueError) as e:
        console.print(f"[red]Cannot set up asset host:[/red] {e}")
        raise typer.Exit(1)

    upload = config.upload
    orchestrator = UploadOrchestrator(
        asset_host, policy=BackoffPolicy(upload.max_retries, upload.base_delay, upload.max_delay)
    )
    job = orchestrator.run_one(UploadJob(key=str(path), data=data, display_name=name))

    if job.status is not JobStatus.SUCCEEDED:
        console.print(f"[red]Upload failed:[/red] {job.error}")
        raise typer.Exit(1)

    typer.echo(str(job.remote_id))
    console.print("[green]✓[/green] Image uploaded successfully!")


@app.command("asset-list")
def asset_list(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Project file or folder"),
    details: bool = typer.Option(False, "--details", help="Show a table of identities and ids")
):
    """List remote asset ids recorded in the manifest."""
    try:
        config = _load_config(config_file)
        manifest = ManifestStore(config.resolved_manifest_path).load()
    except (ConfigurationError, ManifestCorruptError, OSError, ValueError) as e:
        console.print(f"[red]Error reading manifest:[/red] {e}")
        raise typer.Exit(1)

    if details:
        table = Table(title="Uploaded Assets")
        table.add_column("Identity", style="cyan")
        table.add_column("Remote Id", style="green")
        table.add_column("Slice", style="dim")
        for entry in manifest:
            slice_text = ""
            if entry.slice is not None:
                slice_text = f"{entry.slice.x},{entry.slice.y} {entry.slice.width}×{entry.slice.height}"
            table.add_row(entry.identity, str(entry.remote_id), slice_text)
        console.print(table)
        return

    for remote_id in sorted({entry.remote_id for entry in manifest}):
        typer.echo(str(remote_id))


@app.command("create-path-map")
def create_path_map(
    output: Path = typer.Argument(..., help="JSON file to write"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Project file or folder")
):
    """Write a JSON map from each remote asset id to the identities using it."""
    try:
        config = _load_config(config_file)
        manifest = ManifestStore(config.resolved_manifest_path).load()
    except (ConfigurationError, ManifestCorruptError, OSError, ValueError) as e:
        console.print(f"[red]Error reading manifest:[/red] {e}")
        raise typer.Exit(1)

    paths_by_id = {}
    for entry in manifest:
        paths_by_id.setdefault(entry.remote_id, []).append(entry.identity)
    path_map = {str(remote_id): paths_by_id[remote_id] for remote_id in sorted(paths_by_id)}

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w', encoding='utf-8') as f:
            json.dump(path_map, f, indent=2)
            f.write("\n")
    except OSError as e:
        console.print(f"[red]Error writing path map:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Wrote {len(path_map)} asset ids to {output}")


@app.command()
def config(
    show: bool = typer.Option(False, "--show", help="Show current configuration"),
    validate_config: bool = typer.Option(False, "--validate", help="Validate configuration file"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file path"),
    env_vars: bool = typer.Option(False, "--env-vars", help="Show available environment variables")
):
    """Manage sync configuration."""
    if env_vars:
        _display_env_vars()
        return

    if not (show or validate_config):
        console.print("Use --show to display configuration, --validate to check it, or --env-vars to see environment variables.")
        return

    try:
        sync_config = _load_config(config_file)
    except (ConfigurationError, OSError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(1)

    if show:
        _display_config(sync_config)

    if validate_config:
        errors = sync_config.validate()
        if errors:
            console.print("[red]Configuration validation errors:[/red]")
            for error in errors:
                console.print(f"  • {error}")
            raise typer.Exit(1)
        console.print("[green]✓ Configuration is valid[/green]")


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]asset-sync[/bold] version [cyan]{__version__}[/cyan]")


def _load_config(config_file: Optional[Path]) -> SyncConfig:
    """Load configuration from file or use defaults with environment variable support."""
    config = None

    if config_file:
        if not config_file.exists():
            console.print(f"[red]Configuration file not found:[/red] {config_file}")
            raise typer.Exit(1)
        config = SyncConfig.from_file(config_file)
        console.print(f"[dim]Using configuration: {config_file}[/dim]")
    else:
        # Try to find default config files
        default_configs = [
            Path(CONFIG_FILENAME),
            Path("asset-sync.json"),
        ]

        for config_path in default_configs:
            if config_path.exists():
                console.print(f"[dim]Using configuration: {config_path}[/dim]")
                config = SyncConfig.from_file(config_path)
                break

        if config is None:
            console.print("[dim]Using default configuration[/dim]")
            config = SyncConfig()

    # Apply environment variable overrides
    config = SyncConfig._apply_env_overrides(config)

    env_vars_used = [key for key in os.environ if key.startswith('ASSET_SYNC_')]
    if env_vars_used:
        console.print(f"[dim]Environment overrides applied: {len(env_vars_used)} variables[/dim]")

    return config


def _display_sync_summary(result: SyncResult) -> None:
    """Display sync summary and collected per-asset problems."""
    console.print("\n[bold]Sync Summary[/bold]")
    console.print("=" * 50)

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Inputs discovered", str(result.discovered))
    table.add_row("Inputs unchanged", str(result.unchanged))
    table.add_row("Spritesheet pages", str(result.pages))
    table.add_row("Upload jobs", str(result.jobs))
    table.add_row("Failures", str(len(result.failures)))
    table.add_row("Lua modules written", str(len(result.codegen_files)))
    if result.pruned:
        table.add_row("Manifest entries pruned", str(result.pruned))

    console.print(table)

    problems = [(f, "red") for f in result.failures] + [(w, "yellow") for w in result.warnings]
    if problems:
        problem_table = Table()
        problem_table.add_column("Asset", style="cyan")
        problem_table.add_column("Kind", width=20)
        problem_table.add_column("Message", style="dim")
        for problem, colour in problems:
            problem_table.add_row(problem.identity, f"[{colour}]{problem.kind.value}[/{colour}]", problem.message)
        console.print(problem_table)


def _display_config(config: SyncConfig) -> None:
    """Display configuration in a formatted table."""
    table = Table(title="Asset Sync Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Name", config.name)
    table.add_row("Project Directory", str(config.project_dir))
    table.add_row("Manifest", str(config.resolved_manifest_path))

    sheet = config.spritesheet
    table.add_row("Padding", str(sheet.padding))
    table.add_row("Page Size", f"{sheet.min_size}–{sheet.max_size}")
    table.add_row("Alpha Bleed", str(sheet.alpha_bleed))

    upload = config.upload
    table.add_row("Max Retries", str(upload.max_retries))
    table.add_row("Backoff", f"{upload.base_delay}s doubling to {upload.max_delay}s")
    table.add_row("Parallelism", str(upload.parallelism))

    table.add_row("Host", config.host.type)
    table.add_row("Includes", str(config.includes))
    for item in config.inputs:
        flags = []
        if item.packable:
            flags.append("packable")
        if item.codegen:
            flags.append(f"codegen={item.codegen}")
        table.add_row("Input", f"{item.glob} ({', '.join(flags) or 'plain'})")

    console.print(table)


def _display_env_vars() -> None:
    """Display available environment variables for configuration."""
    table = Table(title="Asset Sync Environment Variables")
    table.add_column("Environment Variable", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Example", style="green")

    env_vars = [
        ("ASSET_SYNC_MANIFEST_PATH", "Manifest file path", "asset-manifest.toml"),
        ("ASSET_SYNC_PADDING", "Spritesheet padding in pixels", "1"),
        ("ASSET_SYNC_MIN_PAGE_SIZE", "Minimum spritesheet page size", "128"),
        ("ASSET_SYNC_MAX_PAGE_SIZE", "Maximum spritesheet page size", "1024"),
        ("ASSET_SYNC_ALPHA_BLEED", "Bleed edge colours into padding (true/false)", "true"),
        ("ASSET_SYNC_MAX_RETRIES", "Rate-limit retries per upload", "5"),
        ("ASSET_SYNC_BASE_DELAY", "First backoff delay in seconds", "1.0"),
        ("ASSET_SYNC_MAX_DELAY", "Backoff delay cap in seconds", "60"),
        ("ASSET_SYNC_PARALLELISM", "Concurrent uploads", "4"),
        ("ASSET_SYNC_HOST", "Asset host (open-cloud, debug, none)", "open-cloud"),
        ("ASSET_SYNC_API_KEY", "Open Cloud API key", "..."),
    ]

    for var_name, description, example in env_vars:
        table.add_row(var_name, description, example)

    console.print(table)
    console.print("\n[dim]Set these environment variables to override configuration file settings.[/dim]")
    console.print("[dim]Example: export ASSET_SYNC_HOST=debug[/dim]")


if __name__ == "__main__":
    app()
