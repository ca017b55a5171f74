"""ipfsbridge CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

_shutdown_requested = False

BANNER = """
 _       __      _          _     _
(_)_ __ / _|___ | |__  _ __(_) __| | __ _  ___
| | '_ \\| |_/ __|| '_ \\| '__| |/ _` |/ _` |/ _ \\
| | |_) |  _\\__ \\| |_) | |  | | (_| | (_| |  __/
|_| .__/|_| |___/|_.__/|_|  |_|\\__,_|\\__, |\\___|
  |_|                                |___/
        Your IPFS node, reachable from anywhere
"""

# Config file sections whose keys map straight onto IPFSBRIDGE_* variables.
_CONFIG_SECTIONS = ("gateway_", "tunnel_", "fetch_")


def _configure_logging(log_level: str) -> None:
    import structlog

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


def _apply_file_config(file_config: dict) -> None:
    """Export file settings as env vars unless the environment already sets them."""
    from ipfsbridge.core.config import clear_config

    for key, value in file_config.items():
        for section in _CONFIG_SECTIONS:
            if key.startswith(section):
                key = key[len(section):]
                break
        env_key = f"IPFSBRIDGE_{key.upper()}"
        if env_key not in os.environ and value is not None:
            os.environ[env_key] = str(value)
    clear_config()


@click.group(invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info, use --verbose for debug)",
)
@click.pass_context
def main(ctx: click.Context, config_file: str | None, verbose: bool, log_level: str):
    """ipfsbridge - Your IPFS node, reachable from anywhere.

    Examples:

        ipfsbridge serve

        ipfsbridge serve --port 5002 --upstream http://127.0.0.1:5001

        ipfsbridge verify bafkreib...

        ipfsbridge download bafkreib... --output ./certificates

    All settings can also come from IPFSBRIDGE_* environment variables.
    """
    if config_file:
        from ipfsbridge.core.config import flatten_config, load_config_from_file
        try:
            _apply_file_config(flatten_config(load_config_from_file(config_file)))
            console.print(f"Loaded config from {config_file}", style="dim")
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    _configure_logging("debug" if verbose else log_level)

    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file

    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: ipfsbridge serve", style="yellow")
        console.print("       ipfsbridge verify <metadata-cid>", style="yellow")
        console.print("       ipfsbridge download <metadata-cid>", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  ipfsbridge serve     Start the gateway and public tunnel", style="dim")
        console.print("  ipfsbridge verify    Look up a credential's metadata", style="dim")
        console.print("  ipfsbridge download  Download a credential through relays", style="dim")
        console.print("  ipfsbridge config    Show or export configuration", style="dim")
        console.print("  ipfsbridge version   Show version information", style="dim")


@main.command()
@click.option("--host", default=None, help="Loopback address to bind (default: 127.0.0.1)")
@click.option("--port", "-p", type=int, default=None, help="Gateway port (default: 5002)")
@click.option("--upstream", "-u", default=None, help="Storage node API base URL")
@click.option("--prefix", default=None, help="Path prefix forwarded upstream (default: /api/v0)")
@click.option("--subdomain", "-s", default=None, help="Public subdomain requested for the tunnel")
@click.option("--tunnel/--no-tunnel", default=True, help="Expose the gateway through a public tunnel")
def serve(
    host: str | None,
    port: int | None,
    upstream: str | None,
    prefix: str | None,
    subdomain: str | None,
    tunnel: bool,
):
    """Start the gateway and keep a public tunnel to it alive.

    Runs until interrupted. The tunnel helper is restarted whenever it exits.
    """
    from ipfsbridge.core.config import get_config
    from ipfsbridge.core.session import BridgeContext

    cfg = get_config()
    gateway_overrides = {
        k: v
        for k, v in {
            "listen_host": host,
            "listen_port": port,
            "upstream_url": upstream,
            "path_prefix": prefix,
        }.items()
        if v is not None
    }
    tunnel_overrides = {"tunnel_subdomain": subdomain} if subdomain else {}

    context = BridgeContext(
        gateway=cfg.gateway.model_copy(update=gateway_overrides),
        tunnel=cfg.tunnel.model_copy(update=tunnel_overrides),
    )

    console.print(BANNER, style="cyan")
    console.print(
        f"Starting gateway on {context.local_url} -> {context.gateway.upstream_url}...",
        style="yellow",
    )
    _run_with_signal_handling(run_bridge(context, tunnel))


def _run_with_signal_handling(coro) -> None:
    """Run ``coro`` with proper signal handling for clean Ctrl+C shutdown."""
    global _shutdown_requested
    _shutdown_requested = False

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(coro)

    def signal_handler(sig: int, frame: object) -> None:
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except KeyboardInterrupt:
        pass
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


def _print_tunnel_panel(public_url: str, local_url: str, token: str) -> None:
    # The session token is shown on the operator console only, never sent anywhere.
    console.print(
        Panel(
            f"[green]Tunnel established![/green]\n\n"
            f"[bold]Local URL:[/bold] {local_url}\n"
            f"[bold]Tunnel URL:[/bold] [cyan]{public_url}[/cyan]\n"
            f"[bold]Auth Token:[/bold] {token}\n\n"
            f"Use this URL in your frontend environment: {public_url}",
            title="IPFS Tunnel",
            border_style="green",
        )
    )


async def run_bridge(context, tunnel: bool = True) -> None:
    """Run the gateway, and the tunnel supervisor if enabled, until cancelled."""
    from ipfsbridge.gateway.proxy import ProxyGateway
    from ipfsbridge.tunnel.supervisor import TunnelSupervisor

    gateway = ProxyGateway(context)
    try:
        await gateway.start()
    except OSError as e:
        console.print(
            Panel(
                f"[red]Cannot listen on {context.local_url}: {e.strerror or e}[/red]",
                title="Gateway Error",
                border_style="red",
            )
        )
        sys.exit(1)

    supervisor: TunnelSupervisor | None = None
    if tunnel:
        supervisor = TunnelSupervisor(context, port=gateway.port)
        supervisor.add_url_hook(
            lambda url: _print_tunnel_panel(url, gateway.url, context.session.token)
        )
        supervisor.start()
        console.print("Starting tunnel...", style="yellow")
    else:
        console.print(f"[green]Gateway listening on {gateway.url}[/green]")

    console.print("\nPress Ctrl+C to stop.\n", style="dim")
    try:
        await asyncio.Event().wait()
    finally:
        if supervisor:
            await supervisor.stop()
        await gateway.stop()
        console.print("[green]Gateway stopped.[/green]")


def _print_error(e: Exception) -> None:
    from ipfsbridge.core.exceptions import BridgeError, format_error_for_user

    if isinstance(e, BridgeError):
        console.print(Panel(f"[red]{e.message}[/red]", title=f"Error: {e.code}", border_style="red"))
    else:
        console.print(Panel(f"[red]{format_error_for_user(e)}[/red]", title="Error", border_style="red"))


async def _verify(content_id: str):
    from ipfsbridge.core.config import get_config
    from ipfsbridge.fetch.metadata import GatewayMetadataLookup, verify_credential

    fetch_cfg = get_config().fetch
    lookup = GatewayMetadataLookup(
        fetch_cfg.gateway_host,
        fetch_cfg.gateway_token,
        timeout=fetch_cfg.attempt_timeout,
    )
    try:
        return await verify_credential(content_id, lookup, fetch_cfg.content_id_prefix)
    finally:
        await lookup.aclose()


def _print_verification(result, json_output: bool) -> None:
    display = result.to_display_dict()
    if json_output:
        click.echo(json.dumps({"content_id": result.content_id, **display}, indent=2))
        return

    table = Table(title="Credential Verified!", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for label, value in display.items():
        table.add_row(label, str(value) if value is not None else "[dim]-[/dim]")
    console.print(table)


@main.command()
@click.argument("content_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def verify(content_id: str, json_output: bool):
    """Look up a credential by its metadata CID."""
    try:
        result = asyncio.run(_verify(content_id))
    except Exception as e:
        _print_error(e)
        sys.exit(1)
    _print_verification(result, json_output)


async def _download(content_id: str, output: str | None, image: bool, timeout: float | None):
    from ipfsbridge.core.config import get_config
    from ipfsbridge.fetch.fetcher import FallbackFetcher
    from ipfsbridge.fetch.materialize import FileMaterializer

    fetch_cfg = get_config().fetch
    if timeout is not None:
        fetch_cfg = fetch_cfg.model_copy(update={"attempt_timeout": timeout})

    fetcher = FallbackFetcher.from_config(
        fetch_cfg,
        materializer=FileMaterializer(output or fetch_cfg.download_dir),
    )
    try:
        if image:
            result = await fetcher.download(content_id)
        else:
            verification = await _verify(content_id)
            _print_verification(verification, json_output=False)
            result = await fetcher.download_credential(verification)
        return result
    finally:
        # Let the deferred cleanup run before the loop goes away.
        await asyncio.sleep(fetcher.cleanup_delay)
        await fetcher.aclose()


@main.command()
@click.argument("content_id")
@click.option("--output", "-o", type=click.Path(file_okay=False), help="Directory to save into")
@click.option("--image", is_flag=True, help="CONTENT_ID is the file itself, skip metadata lookup")
@click.option("--timeout", "-t", type=float, default=None, help="Per-relay timeout in seconds (default: 10)")
def download(content_id: str, output: str | None, image: bool, timeout: float | None):
    """Download a credential file, falling back across public relays.

    Examples:

        ipfsbridge download bafkreib...

        ipfsbridge download bafybeig... --image --output ./files
    """
    try:
        result = asyncio.run(_download(content_id, output, image, timeout))
    except Exception as e:
        _print_error(e)
        sys.exit(1)

    console.print(
        Panel(
            f"[green]Download complete![/green]\n\n"
            f"[bold]File:[/bold] {result.path}\n"
            f"[bold]Size:[/bold] {_format_bytes(result.size)}\n"
            f"[bold]Relay:[/bold] {result.relay} (attempt {result.attempts})",
            title="ipfsbridge",
            border_style="green",
        )
    )


@main.command()
def version():
    """Show version information."""
    from ipfsbridge import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


def _format_bytes(num_bytes: int | float) -> str:
    value: float = float(num_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


@main.group()
def config():
    """View and export configuration settings.

    All settings can be configured via environment variables with the
    IPFSBRIDGE_ prefix. Use these commands to see current values.

    Examples:

        ipfsbridge config show            # Show all config settings

        ipfsbridge config export          # Export as env vars

        ipfsbridge config validate        # Validate current config
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (gateway, tunnel, fetch)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings."""
    from ipfsbridge.core.config import get_config

    display = get_config().to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        click.echo(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, f"IPFSBRIDGE_{key.upper()}")

        console.print(table)
        console.print()


@config.command("export")
@click.option("--shell", type=click.Choice(["bash", "powershell", "cmd"]), default="bash", help="Shell format")
def config_export(shell: str):
    """Export current configuration as environment variables."""
    from ipfsbridge.core.config import get_config

    console.print(f"# ipfsbridge Configuration Export ({shell})")
    console.print("# Copy and paste or save to a file\n")

    for key, value in get_config().to_env_dict().items():
        if shell == "bash":
            console.print(f'export {key}="{value}"')
        elif shell == "powershell":
            console.print(f'$env:{key}="{value}"')
        elif shell == "cmd":
            console.print(f"set {key}={value}")


@config.command("validate")
def config_validate():
    """Validate current configuration.

    Checks that all config values are valid and within expected ranges.
    """
    from ipfsbridge.core.config import clear_config, get_config

    clear_config()

    try:
        cfg = get_config()
        errors = []
        warnings = []

        gw = cfg.gateway
        if gw.listen_host not in ("127.0.0.1", "localhost", "::1"):
            warnings.append(f"listen_host ({gw.listen_host}) is not a loopback address")
        if not 0 <= gw.listen_port <= 65535:
            errors.append(f"listen_port ({gw.listen_port}) must be between 0 and 65535")
        if not gw.upstream_url.startswith(("http://", "https://")):
            errors.append(f"upstream_url ({gw.upstream_url}) must be an http(s) URL")

        tun = cfg.tunnel
        if "{port}" not in tun.tunnel_command:
            warnings.append("tunnel_command has no {port} placeholder")
        if tun.restart_delay < 0.1:
            warnings.append(f"restart_delay ({tun.restart_delay}s) is very short, may hot-loop")

        fetch = cfg.fetch
        if not fetch.get_relays():
            errors.append("relays must list at least one relay")
        if fetch.attempt_timeout <= 0:
            errors.append(f"attempt_timeout ({fetch.attempt_timeout}) must be positive")

        if errors:
            console.print("[red bold]Configuration Errors:[/red bold]")
            for error in errors:
                console.print(f"  [red]x[/red] {error}")
            console.print()

        if warnings:
            console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
            for warning in warnings:
                console.print(f"  [yellow]![/yellow] {warning}")
            console.print()

        if not errors and not warnings:
            console.print("[green]OK - Configuration is valid[/green]")
        elif not errors:
            console.print("[green]OK - Configuration is valid (with warnings)[/green]")
        else:
            console.print("[red]ERROR - Configuration has errors[/red]")
            sys.exit(1)

    except Exception as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
