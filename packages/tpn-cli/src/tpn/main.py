import json
import logging
from typing import Optional

import typer
from pydantic import ValidationError
from rich import print
from rich.markup import escape
from rich.prompt import Confirm

from tpn import __version__
from tpn.config import Settings, get_settings
from tpn.core.driver import WireGuardDriver
from tpn.core.endpoints import COUNTRY_FORMATS, EndpointClient
from tpn.core.errors import TpnError
from tpn.core.lease import LeaseStore
from tpn.core.platform import get_platform
from tpn.core.privileges import PrivilegeGrant
from tpn.core.recovery import plan_wipe, wipe_interfaces
from tpn.core.session import (
    ConnectRequest,
    DisconnectRequest,
    SessionController,
)

logger = logging.getLogger(__name__)

APP_HELP = f"""
TPN {__version__} - CLI for creating VPN connections via the Tensor Private Network (TPN).

A connection is a WireGuard tunnel leased for a number of minutes from a TPN
node. The config is fetched from the TPN API (trying each configured endpoint
in order) and brought up with wg-quick.

CORE WORKFLOW:
1. LIST:       Run `tpn countries` to see where nodes are available.
2. CONNECT:    Run `tpn connect US` to lease a tunnel (10 minutes by default).
3. CHECK:      Run `tpn status` to see the connection and remaining lease.
4. DISCONNECT: Run `tpn disconnect` to tear the tunnel down.

Run `tpn visudo` once so wg-quick can run without a password prompt.
"""

app = typer.Typer(name="tpn", help=APP_HELP, no_args_is_help=True)

state = {"debug": False}


def _confirm(message: str) -> bool:
    return Confirm.ask(message, default=True)


def _notify(message: str) -> None:
    print(f"[dim]{escape(message)}[/dim]")


def _fail(message: str) -> None:
    print(f"[red]Error: {escape(message)}[/red]")
    raise typer.Exit(code=1)


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        _fail(f"invalid configuration: {_validation_message(e)}")


def _build_controller(settings: Settings, client: EndpointClient) -> SessionController:
    return SessionController(
        settings=settings,
        client=client,
        driver=WireGuardDriver(),
        store=LeaseStore(settings),
        platform=get_platform(),
        privileges=PrivilegeGrant(settings),
        confirm=_confirm,
        notify=_notify,
    )


def _show_ip_change(prefix: str, before: Optional[str], after: Optional[str]) -> None:
    print(f"[green]{prefix} from {before or 'unknown'} to {after or 'unknown'}[/green]")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Debug logging and wg-quick output."),
):
    """
    TPN CLI: leased WireGuard tunnels.
    """
    settings = _load_settings()
    state["debug"] = debug or settings.debug

    logging.basicConfig(
        level=logging.DEBUG if state["debug"] else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@app.command("countries")
def countries(
    fmt: str = typer.Argument("name", help="List country 'name's or ISO 'code's"),
):
    """
    List countries with available TPN nodes.

    Examples:
        tpn countries
        tpn countries code
    """
    if fmt not in COUNTRY_FORMATS:
        _fail(f"format must be one of: {', '.join(COUNTRY_FORMATS)}")

    settings = _load_settings()
    try:
        with EndpointClient(settings) as client:
            listing = client.list_countries(fmt)
    except TpnError as e:
        _fail(e.message)

    typer.echo(listing.rstrip("\n"))


@app.command("connect")
def connect(
    country: str = typer.Argument(..., help="Country code, e.g. US"),
    lease_minutes: Optional[int] = typer.Option(
        None, "--lease_minutes", "--lease-minutes", "-l", help="Lease duration in minutes (default 10)"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="API timeout in seconds"),
    force: bool = typer.Option(False, "-f", "--force", help="Skip confirmation"),
    dry: bool = typer.Option(False, "--dry", help="Dry run: fetch the config but do not bring it up"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show wg-quick output"),
):
    """
    Fetch a WireGuard config and bring the tunnel up.

    Any config left over from a previous connection is torn down first.

    Examples:
        tpn connect US
        tpn connect NL -l 30 -f
        tpn connect DE --dry -v
    """
    settings = _load_settings()
    verbose = verbose or state["debug"]

    try:
        request = ConnectRequest(
            country_code=country,
            lease_minutes=lease_minutes if lease_minutes is not None else settings.default_lease_minutes,
            timeout_seconds=timeout,
            skip_confirmation=force,
            dry_run=dry,
            verbose=verbose,
        )
    except ValidationError as e:
        _fail(_validation_message(e))

    if verbose:
        print(f"[dim]Called with: {request.model_dump()}[/dim]")

    try:
        with EndpointClient(settings) as client:
            controller = _build_controller(settings, client)
            if not dry:
                controller.driver.ensure_tools()
            result = controller.connect(request)
    except TpnError as e:
        _fail(e.message)

    if result.aborted:
        print("[red]Aborted.[/red]")
        return

    for action in result.planned_actions:
        print(f"[dim]DRY RUN: sudo {action}[/dim]")

    _show_ip_change("IP address changed", result.ip_before, result.ip_after)

    if result.lease:
        print(
            f"[dim]TPN Connection lease ends in {result.lease_minutes} minutes "
            f"({result.lease.expiry_readable})[/dim]"
        )


@app.command("disconnect")
def disconnect(
    dry: bool = typer.Option(False, "--dry", help="Dry run: show what would be done"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show wg-quick output"),
):
    """
    Bring the WireGuard interface down and remove its config.
    """
    settings = _load_settings()
    request = DisconnectRequest(dry_run=dry, verbose=verbose or state["debug"])

    try:
        with EndpointClient(settings) as client:
            controller = _build_controller(settings, client)
            result = controller.disconnect(request)
    except TpnError as e:
        _fail(e.message)

    for action in result.planned_actions:
        print(f"[dim]DRY RUN: sudo {action}[/dim]")

    _show_ip_change("IP changed back", result.ip_before, result.ip_after)


@app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    Show public IP, connection status and remaining lease.
    """
    settings = _load_settings()
    try:
        with EndpointClient(settings) as client:
            report = _build_controller(settings, client).status()
    except TpnError as e:
        _fail(e.message)

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return

    message = f"TPN status: {report.state.value} ({report.public_ip or 'unknown'})"
    if report.connected:
        print(f"[green]{message}[/green]")
        if report.lease:
            print(
                f"[dim]Lease ends in {report.remaining_minutes} minutes "
                f"({report.lease.expiry_readable})[/dim]"
            )
        else:
            print("No lease end time found.")
    else:
        print(message)

    if report.interrupted_connect:
        print(
            "[yellow]A previous connect was interrupted before its lease was saved. "
            "Run `tpn connect` or `tpn disconnect` to clean up.[/yellow]"
        )


@app.command("visudo")
def visudo():
    """
    One-time sudoers entry so wg-quick runs without a password prompt.
    """
    settings = _load_settings()
    driver = WireGuardDriver()
    grant = PrivilegeGrant(settings, wg_quick=driver.wg_quick)

    print("[dim]Creating sudoers entry for wg-quick...[/dim]")
    try:
        driver.ensure_tools()
        grant.install()
    except TpnError as e:
        _fail(e.message)

    print(f"[dim]Added sudoers entry: {settings.sudoers_file}[/dim]")
    print("[green]You can now run tpn without sudo.[/green]")


@app.command("panic")
def panic():
    """
    DESTRUCTIVE: bring down and delete all WireGuard and TUN interfaces.
    """
    print("[red]WARNING: irreversible destructive action.[/red]")
    if not _confirm("Proceed?"):
        print("Aborted.")
        raise typer.Exit(code=1)

    driver = WireGuardDriver()
    try:
        platform = get_platform()
    except TpnError as e:
        _fail(e.message)

    plan = plan_wipe(driver, platform)
    print(f"[dim]WireGuard interfaces: {' '.join(plan.wireguard)}[/dim]")
    print(f"[dim]TUN interfaces: {' '.join(plan.tunnels)}[/dim]")

    if plan.empty:
        print("Nothing to delete.")
        return

    result = wipe_interfaces(driver, platform, plan, _confirm)
    if result.aborted:
        print("Aborted.")
        raise typer.Exit(code=1)

    if result.deleted:
        print(f"[green]Deleted: {' '.join(result.deleted)}[/green]")
    if result.failed:
        _fail(f"could not delete: {' '.join(result.failed)}")


if __name__ == "__main__":
    app()
