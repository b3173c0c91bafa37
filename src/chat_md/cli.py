"""Command-line interface for chat-md."""

import sys
import click
from pathlib import Path
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

from chat_md.config import CONFIG_DIR, Config
from chat_md.errors import ChatMdError
from chat_md.exporter import Exporter, markdown_data_url
from chat_md.segmenter import has_conversation

console = Console()


def custom_rich_sink(message):
    """Custom loguru sink with color-coded levels."""
    record = message.record
    level = record["level"].name
    time = record["time"].strftime("%H:%M:%S")
    msg = escape(record["message"])

    # Color map for different levels
    level_colors = {
        "DEBUG": "dim",
        "INFO": "blue",
        "SUCCESS": "green",
        "WARNING": "yellow",
        "ERROR": "red bold",
    }

    color = level_colors.get(level, "white")
    formatted = f"[green]{time}[/green] | [{color}]{level: <8}[/{color}] | {msg}"
    console.print(formatted, highlight=False)


def configure_logging(log_dir: Path, verbose: bool = False):
    """Replace loguru's default sink with the console sink and a rotating file log."""
    logger.remove()
    if verbose:
        logger.add(
            sys.stderr,
            format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
            level="DEBUG"
        )
    else:
        logger.add(custom_rich_sink, level="INFO")

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "chat_md_{time:YYYY-MM-DD}.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG"
    )


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--config-dir', type=click.Path(file_okay=False, path_type=Path),
              envvar='CHAT_MD_HOME', default=CONFIG_DIR, show_default=True,
              help='Directory holding config.toml and logs')
@click.pass_context
def cli(ctx, verbose, config_dir):
    """chatmd - Export saved chat conversations to Markdown"""
    config = Config(config_dir)
    configure_logging(config.log_dir, verbose)
    if verbose:
        logger.debug("Verbose logging enabled")
    ctx.obj = config


@cli.command()
@click.argument('filepath', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--images/--no-images', default=None,
              help='Bundle images into a .zip (defaults to the download_images setting)')
@click.option('--title', '-t', help='Title to use instead of the page title')
@click.option('--output', '-o', type=click.Path(file_okay=False, path_type=Path),
              help='Output directory (defaults to the output_dir setting)')
@click.option('--base-url', help='URL that relative image sources are resolved against')
@click.option('--stdout-data-url', is_flag=True,
              help='Print the Markdown as a data: URL instead of writing a file')
@click.pass_obj
def export(config, filepath, images, title, output, base_url, stdout_data_url):
    """
    Export a saved conversation page to Markdown

    Examples:
        chatmd export conversation.html
        chatmd export conversation.html --images -o ~/notes
        chatmd export conversation.html --title "Planning session"
    """
    settings = config.get_settings()
    exporter = Exporter(settings)

    if stdout_data_url:
        extraction = exporter.extract(filepath, download_images=False,
                                      title_override=title, base_url=base_url)
        if not extraction.ok:
            console.print(f"[red]✗ Export failed: {extraction.error}[/red]")
            raise click.Abort()
        try:
            click.echo(markdown_data_url(extraction.markdown, settings.encoding))
        except ChatMdError as e:
            logger.error("Data URL delivery failed: {}", e)
            console.print(f"[red]✗ Export failed: {e}[/red]")
            raise click.Abort()
        return

    # Use Progress with transient=True so it doesn't interfere with logs
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True
    ) as progress:
        task = progress.add_task(f"Exporting {filepath.name}...", total=None)
        result = exporter.export(filepath, output_dir=output, download_images=images,
                                 title_override=title, base_url=base_url)
        progress.update(task, completed=True)

    if result.success:
        console.print(f"[green]✓ Exported to {result.output_path}[/green]")
        if result.image_count > 0:
            console.print(f"  [dim]Images: {result.image_count} files[/dim]")
    else:
        console.print(f"[red]✗ Export failed: {result.error}[/red]")
        raise click.Abort()


@cli.command()
@click.argument('filepath', type=click.Path(exists=True, dir_okay=False, path_type=Path))
def check(filepath):
    """Check whether a saved page contains a conversation"""
    soup = Exporter.load_document(filepath)
    if has_conversation(soup):
        console.print(f"[green]✓ Conversation found in {filepath.name}[/green]")
    else:
        console.print(f"[yellow]No conversation turns found in {filepath.name}[/yellow]")
        raise click.Abort()


@cli.command()
@click.pass_obj
def config_show(config):
    """Show current settings"""
    settings = config.get_settings()
    console.print(f"[bold]Settings[/bold] [dim]({config.config_file})[/dim]")
    console.print(f"  download_images: {settings.download_images}")
    console.print(f"  output_dir: {settings.output_dir or '(current directory)'}")
    console.print(f"  default_title: {settings.default_title or '(none)'}")
    console.print(f"  encoding: {settings.encoding}")
    console.print(f"  request_timeout: {settings.request_timeout or '(none)'}")


@cli.command()
@click.argument('key')
@click.argument('value')
@click.pass_obj
def config_set(config, key, value):
    """Set a setting

    Examples:
        chatmd config-set download_images true
        chatmd config-set output_dir ~/notes/chats
    """
    try:
        parsed = config.set_value(key, value)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise click.Abort()
    console.print(f"[green]✓ {key} = {parsed}[/green]")


if __name__ == '__main__':
    cli()
