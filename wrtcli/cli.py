"""Click-based CLI entry point for the ``wrtcli`` package."""

import functools

import click

from .backup_executor import BackupOrchestrator
from .config import Settings, get_settings
from .error_handling import (ErrorClassifier, WrtCliError, build_error_info, configure_logging,
                             get_logger)
from .formatter import format_devices, format_record, format_records, format_status
from .schemas import Device, TransportType

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

log = get_logger(__name__)


def _resolve_settings() -> Settings:
    return get_settings()


def _build_orchestrator(settings: Settings) -> BackupOrchestrator:
    return BackupOrchestrator(settings)


def reports_errors(func):
    """Turn tool errors into a message on stderr and exit status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WrtCliError as e:
            info = build_error_info(e)
            log.debug(f"{func.__name__} failed", error_type=info.error_type,
                      category=info.category.value, stack_trace=info.stack_trace)
            click.echo(f"Error: {e.message}", err=True)
            click.echo(f"Hint: {ErrorClassifier.suggest_action(e)} [{info.category.value}]", err=True)
            click.get_current_context().exit(1)
    return wrapper


@click.group(context_settings=CONTEXT_SETTINGS, help="OpenWrt CLI management tool.")
@click.option("--verbose", "-v", is_flag=True, help="Log debug details to stderr.")
@click.pass_context
def app(ctx: click.Context, verbose: bool) -> None:
    """CLI root group."""
    settings = _resolve_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = _build_orchestrator(settings)


@app.command("add")
@click.argument("name")
@click.option("--ip", required=True, help="IP address (or host:port) of the device.")
@click.option("--user", required=True, help="Username for authentication.")
@click.option("--password", required=True, help="Password for authentication.")
@click.option(
    "--transport",
    type=click.Choice([t.value for t in TransportType]),
    default=TransportType.RPC.value,
    show_default=True,
    help="Management API: ubus JSON-RPC (rpc) or LuCI web interface (rest).",
)
@click.pass_obj
@reports_errors
def add_device(orchestrator: BackupOrchestrator, name: str, ip: str, user: str, password: str,
               transport: str) -> None:
    """Add a new OpenWrt device."""
    try:
        device = Device(name=name, ip=ip, user=user, password=password, transport=TransportType(transport))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="NAME") from e
    orchestrator.registry.add(device)
    click.echo(f"Device '{name}' added successfully")


@app.command("list")
@click.pass_obj
@reports_errors
def list_devices(orchestrator: BackupOrchestrator) -> None:
    """List all registered devices."""
    click.echo(format_devices(orchestrator.registry.list()))


@app.command("remove-device")
@click.argument("name")
@click.pass_obj
@reports_errors
def remove_device(orchestrator: BackupOrchestrator, name: str) -> None:
    """Forget a registered device. Its stored backups are kept."""
    orchestrator.registry.remove(name)
    click.echo(f"Device '{name}' removed")


@app.command("status")
@click.argument("name")
@click.option("--raw", is_flag=True, help="Display raw values (KB, seconds) instead of human readable format.")
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format.")
@click.pass_obj
@reports_errors
def status(orchestrator: BackupOrchestrator, name: str, raw: bool, as_json: bool) -> None:
    """Get status of an OpenWrt device."""
    click.echo(format_status(name, orchestrator.status(name), raw=raw, as_json=as_json))


@app.command("reboot")
@click.argument("name")
@click.pass_obj
@reports_errors
def reboot(orchestrator: BackupOrchestrator, name: str) -> None:
    """Reboot an OpenWrt device."""
    orchestrator.reboot(name)
    click.echo(f"Rebooting device '{name}'...")


@app.group("backup")
def backup() -> None:
    """Backup commands for managing device backups."""


@backup.command("create")
@click.argument("name")
@click.option("--description", "-d", default=None, help="Optional description for the backup.")
@click.pass_obj
@reports_errors
def backup_create(orchestrator: BackupOrchestrator, name: str, description: str) -> None:
    """Create a new backup."""
    record = orchestrator.create(name, description=description)
    click.echo(f"Backup {record.id} created for '{name}' ({record.size} bytes)")


@backup.command("list")
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format.")
@click.pass_obj
@reports_errors
def backup_list(orchestrator: BackupOrchestrator, name: str, as_json: bool) -> None:
    """List all backups for a device."""
    click.echo(format_records(name, orchestrator.list(name), as_json=as_json))


@backup.command("show")
@click.argument("name")
@click.argument("backup_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format.")
@click.pass_obj
@reports_errors
def backup_show(orchestrator: BackupOrchestrator, name: str, backup_id: int, as_json: bool) -> None:
    """Show details of a specific backup."""
    click.echo(format_record(orchestrator.show(name, backup_id), as_json=as_json))


@backup.command("restore")
@click.argument("name")
@click.argument("backup_id", type=int)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
@reports_errors
def backup_restore(orchestrator: BackupOrchestrator, name: str, backup_id: int, yes: bool) -> None:
    """Restore a backup. The device reboots afterwards."""
    if not yes:
        click.confirm(f"Restore backup {backup_id} to '{name}' and reboot it?", abort=True)
    record = orchestrator.restore(name, backup_id)
    click.echo(f"Backup {record.id} restored to '{name}', device is rebooting")


@backup.command("remove")
@click.argument("name")
@click.argument("backup_id", type=int)
@click.pass_obj
@reports_errors
def backup_remove(orchestrator: BackupOrchestrator, name: str, backup_id: int) -> None:
    """Remove a backup."""
    record = orchestrator.remove(name, backup_id)
    click.echo(f"Backup {record.id} removed from '{name}'")


def main() -> None:
    """Entry point compatible with setuptools-style script loading."""
    app(prog_name="wrtcli")


if __name__ == "__main__":  # pragma: no cover - manual execution convenience
    main()
