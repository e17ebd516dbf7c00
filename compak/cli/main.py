"""CLI main entry point"""

import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from compak import __version__
from compak.core.config import get_config
from compak.core.packages.agent import LocalInstallationAgent
from compak.core.packages.browser import PackageBrowser
from compak.core.packages.controller import InstallationController, delete_installed_files
from compak.core.packages.environment import (
    compose_environment_table,
    compose_library_path,
    compose_module_path,
)
from compak.core.packages.exceptions import PackageError
from compak.core.packages.locator import DirectoryPackageLocator, LoggingInstallationMonitor
from compak.core.packages.manifest import MANIFEST_FILE_PATH, ManifestHandler

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _exit(ctx: click.Context, success: bool) -> None:
    if not success and not ctx.obj["config"].always_exit_zero:
        ctx.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="compak")
@click.pass_context
def cli(ctx):
    """compak - component package installer"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(levelname)s: %(message)s"
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command(name="install")
@click.argument("arguments", nargs=-1)
@click.option("--local", "local_file", type=click.Path(exists=True, dir_okay=False),
              help="Install from a local package file")
@click.option("--root", "install_in_root_dir", is_flag=True,
              help="Install directly into INSTALLATION_DIR instead of INSTALLATION_DIR/<id>")
@click.option("--no-verify", is_flag=True, help="Skip the verification run")
@click.option("--search-dir", "search_dirs", multiple=True, type=click.Path(file_okay=False),
              help="Directory holding installed packages (repeatable)")
@click.option("--archive-dir", "archive_dirs", multiple=True, type=click.Path(file_okay=False),
              help="Directory holding package archives (repeatable)")
@click.option("--url-template", default=None,
              help="Download URL of a package, with {component_id} as placeholder")
@click.pass_context
def install_cmd(
    ctx,
    arguments: Tuple[str, ...],
    local_file: Optional[str],
    install_in_root_dir: bool,
    no_verify: bool,
    search_dirs: Tuple[str, ...],
    archive_dirs: Tuple[str, ...],
    url_template: Optional[str],
):
    """Install a package and its delegates.

    \b
    compak install [--root] COMPONENT_ID [INSTALLATION_DIR]
    compak install [--root] --local FILE [INSTALLATION_DIR]
    """
    config = ctx.obj["config"]

    if local_file:
        if len(arguments) > 1:
            raise click.UsageError("Expected at most INSTALLATION_DIR after --local FILE")
        installation_dir = arguments[0] if arguments else "."
        try:
            component_id = ManifestHandler.load_from_archive(Path(local_file)).main_component_id
        except PackageError as e:
            err_console.print(f"[red]Cannot read {local_file}: {e}[/red]")
            _exit(ctx, False)
            return
        config = config.model_copy(update={"use_local_archive_source": True})
    else:
        if not arguments or len(arguments) > 2:
            raise click.UsageError("Expected COMPONENT_ID [INSTALLATION_DIR] or --local FILE [INSTALLATION_DIR]")
        component_id = arguments[0]
        installation_dir = arguments[1] if len(arguments) > 1 else "."

    base_dir = Path(installation_dir).absolute()
    parent_dir = base_dir.parent if install_in_root_dir else base_dir
    locator = DirectoryPackageLocator(
        search_dirs=[Path(d) for d in search_dirs] or [parent_dir],
        archive_dirs=[Path(d) for d in archive_dirs] or [parent_dir],
        url_template=url_template,
    )

    controller = InstallationController(
        component_id,
        installation_dir,
        install_in_root_dir=install_in_root_dir,
        package_file=local_file,
        locator=locator,
        monitor=LoggingInstallationMonitor(),
        config=config,
    )
    success = False
    try:
        manifest = controller.install_component()
        controller.router.flush()
        if manifest is None:
            err_console.print(f"[red]✗ {component_id} installation failed[/red]")
            if controller.installation_message:
                err_console.print(controller.installation_message, markup=False, highlight=False)
        else:
            console.print(f"[green]✓ {component_id} installed in {controller.main_root}[/green]")
            success = True
            if not no_verify:
                status = controller.verify()
                controller.router.flush()
                if status.succeeded:
                    console.print("[green]✓ Verification completed successfully[/green]")
                elif status.failed:
                    success = False
                    err_console.print("[red]✗ Verification failed[/red]")
                    err_console.print(status.message, markup=False, highlight=False)
                else:
                    success = False
                    console.print(f"[yellow]⚠ Verification cancelled (code {status.return_code})[/yellow]")
    finally:
        controller.terminate()

    _exit(ctx, success)


@cli.command(name="uninstall")
@click.argument("component_id")
@click.argument("installation_dir", default=".", type=click.Path(file_okay=False))
@click.option("--with-delegates", is_flag=True, help="Also remove the delegates the package lists")
@click.pass_context
def uninstall_cmd(ctx, component_id: str, installation_dir: str, with_delegates: bool):
    """Remove an installed package."""
    try:
        done = delete_installed_files(component_id, Path(installation_dir), with_delegates)
    except PackageError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        _exit(ctx, False)
        return

    if done:
        console.print(f"[green]✓ {component_id} removed[/green]")
    else:
        err_console.print(f"[red]✗ {component_id} not installed in {installation_dir} or not fully removed[/red]")
    _exit(ctx, done)


@cli.command(name="browse")
@click.argument("package", type=click.Path(exists=True))
@click.option("--pattern", default=None,
              help="'/prefix' matches paths starting with prefix, anything else matches substrings")
@click.pass_context
def browse_cmd(ctx, package: str, pattern: Optional[str]):
    """List the contents of an installed package or a package archive."""
    path = Path(package)
    try:
        browser = PackageBrowser.from_archive(path) if path.is_file() else PackageBrowser(path)
        manifest = browser.get_manifest()
    except PackageError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        _exit(ctx, False)
        return

    if manifest is not None:
        console.print(f"[cyan]Component:[/cyan] {manifest.main_component_id} ({manifest.deployment.value})")
        if manifest.delegate_components:
            console.print(f"[cyan]Delegates:[/cyan] {', '.join(manifest.delegate_components)}")
    else:
        console.print(f"[yellow]⚠ No {MANIFEST_FILE_PATH} in {package}[/yellow]")

    if pattern:
        directories = browser.index.match(browser.index.directories, pattern)
        files = browser.index.match(browser.index.files, pattern)
    else:
        directories = browser.index.directories
        files = browser.index.files

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Type", style="cyan", width=6)
    table.add_column("Path")
    for entry in directories:
        table.add_row("dir", entry)
    for entry in files:
        table.add_row("file", entry)
    console.print(table)


@cli.command(name="env")
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def env_cmd(ctx, root: str):
    """Print the environment an installed package needs, delegates included."""
    try:
        browser = PackageBrowser(Path(root))
        manifest = browser.get_manifest()
        if manifest is None:
            err_console.print(f"[red]No {MANIFEST_FILE_PATH} in {root}[/red]")
            _exit(ctx, False)
            return
        delegates: List = []
        for component_id, delegate_root in manifest.delegate_components.items():
            if not delegate_root:
                logger.warning(f"Delegate {component_id} has no installed root")
                continue
            delegates.append((delegate_root, ManifestHandler.load_from_package_root(Path(delegate_root))))
    except PackageError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        _exit(ctx, False)
        return

    main = (str(browser.root_dir), manifest)
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Variable", style="cyan")
    table.add_column("Value", overflow="fold")
    table.add_row("PYTHONPATH", compose_module_path(main, delegates))
    table.add_row("PATH", compose_library_path(main, delegates))
    for name, value in compose_environment_table(manifest, [m for _, m in delegates]).items():
        table.add_row(name, value)
    console.print(table)


@cli.command(name="localize")
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.option("--no-verify", is_flag=True, help="Skip the verification run")
@click.pass_context
def localize_cmd(ctx, root: str, no_verify: bool):
    """Localize a copied package in place, verify it, then undo the changes."""
    agent = LocalInstallationAgent(root, config=ctx.obj["config"])
    success = False
    try:
        if agent.localize_component():
            console.print("[green]✓ Localization completed successfully[/green]")
            success = True
            if not no_verify:
                status = agent.verify_localized_component()
                if status.succeeded:
                    console.print("[green]✓ Verification completed successfully[/green]")
                else:
                    success = False
                    err_console.print("[red]✗ Verification failed[/red]")
                    err_console.print(status.message, markup=False, highlight=False)
        else:
            err_console.print("[red]✗ Localization failed: package properties do not match the manifest[/red]")
    except PackageError as e:
        err_console.print(f"[red]Error in LocalInstallationAgent: {e}[/red]")
    finally:
        if not agent.undo_localization():
            success = False
            err_console.print("[red]✗ Failed to undo changes; rename the *.$ files in conf and desc back[/red]")

    _exit(ctx, success)


def main():
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())
