#!/usr/bin/env python3
"""NutZap wallet command line interface."""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, AsyncIterator, Optional

import qrcode
import qrcode.constants
import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .config import WalletSettings, configure_logging
from .crypto import encode_npub
from .session import WalletSession
from .types import SessionStatus, WalletError

app = typer.Typer(
    name="nutzap",
    help="NutZap - Cashu ecash wallet over Nostr",
    rich_markup_mode="markdown",
)
console = Console()

NsecOption = Annotated[
    Optional[str],
    typer.Option("--nsec", help="Nostr private key (nsec1... or hex). Defaults to $NSEC"),
]


def get_nsec(nsec: str | None) -> str:
    """Key from the option, the NSEC environment variable (or .env), or a prompt."""
    if nsec:
        return nsec.strip()
    env_nsec = os.getenv("NSEC")
    if env_nsec:
        return env_nsec.strip()

    console.print("\n[yellow]NSEC (Nostr private key) not found.[/yellow]")
    console.print("Set NSEC in the environment or a .env file, or enter it now.")
    entered = Prompt.ask("Enter your NSEC", password=True)
    if not entered:
        console.print("[red]NSEC is required![/red]")
        raise typer.Exit(1)
    return entered.strip()


def handle_wallet_error(e: WalletError) -> None:
    """Print a wallet error according to its kind."""
    if e.kind == "insufficient_funds":
        console.print(f"[red]💰 {e}[/red]")
    elif e.kind == "offline":
        console.print(f"[yellow]📡 Offline: {e}[/yellow]")
    elif e.kind == "already_processed":
        console.print("[red]🚫 Token has already been claimed![/red]")
    elif e.kind == "validation":
        console.print(f"[red]❌ Invalid input: {e}[/red]")
    else:
        console.print(f"[red]❌ {e}[/red]")


@asynccontextmanager
async def open_session(nsec: str | None) -> AsyncIterator[WalletSession]:
    settings = WalletSettings.from_env()
    configure_logging(settings.log_level)
    key = get_nsec(nsec)
    async with WalletSession(settings) as session:
        await session.initialize(key)
        if session.status is SessionStatus.DEGRADED_OFFLINE:
            console.print("[yellow]⚠️  Mint unreachable, working offline[/yellow]")
        yield session


def run(coro) -> None:
    try:
        asyncio.run(coro)
    except WalletError as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


# ───────────────────────── QR display ─────────────────────────────────


def _matrix_to_text(matrix: list[list[bool]]) -> str:
    """Render a QR matrix with half-block characters, two rows per line."""
    lines = []
    for i in range(0, len(matrix), 2):
        line = ""
        for j in range(len(matrix[i])):
            top = matrix[i][j]
            bottom = matrix[i + 1][j] if i + 1 < len(matrix) else False
            if top and bottom:
                line += "█"
            elif top:
                line += "▀"
            elif bottom:
                line += "▄"
            else:
                line += " "
        lines.append(line)
    return "\n".join(lines)


def display_qr_code(data: str, title: str = "QR Code") -> None:
    """Print ``data`` as a QR code framed in a panel.

    Args:
        data: Invoice or token to encode
        title: Panel title
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=1,
        border=1,
    )
    qr.add_data(data.upper() if data.lower().startswith("ln") else data)
    qr.make(fit=True)
    console.print(
        Panel(
            _matrix_to_text(qr.get_matrix()),
            title=f"[cyan]📱 {title}[/cyan]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ───────────────────────── Commands ─────────────────────────────────


@app.command()
def balance(
    nsec: NsecOption = None,
    sync: Annotated[
        bool, typer.Option("--sync", help="Drop proofs the mint reports as spent")
    ] = False,
) -> None:
    """Show the wallet balance."""

    async def _balance() -> None:
        async with open_session(nsec) as session:
            if sync:
                await session.sync_balance()
            state = session.get_state()
            console.print(f"[green]✅ Balance: {state.balance} sat[/green]")
            console.print(f"[dim]Mint: {state.mint_url or 'none'}[/dim]")
            console.print(f"[dim]Proofs: {len(state.proofs)}[/dim]")

    run(_balance())


@app.command()
def deposit(
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    memo: Annotated[Optional[str], typer.Option("--memo", help="Invoice memo")] = None,
    wait: Annotated[
        bool, typer.Option("--wait/--no-wait", help="Wait for the invoice to be paid")
    ] = True,
    qr: Annotated[bool, typer.Option("--qr/--no-qr", help="Show invoice QR code")] = True,
    nsec: NsecOption = None,
) -> None:
    """Create a Lightning invoice that mints ecash when paid."""

    async def _deposit() -> None:
        async with open_session(nsec) as session:
            created = await session.create_deposit(amount, memo)
            console.print(f"\n[cyan]⚡ Pay this invoice for {amount} sat:[/cyan]")
            console.print(created.invoice)
            if qr:
                display_qr_code(created.invoice, "Lightning Invoice")
            console.print(f"[dim]Quote: {created.quote_id}[/dim]")
            if not wait:
                return
            with console.status("Waiting for payment..."):
                paid = await session.watch_deposit(created.quote_id)
            if paid:
                console.print(
                    f"[green]✅ Received {amount} sat. Balance: {session.get_balance()} sat[/green]"
                )
            else:
                console.print("[yellow]⏰ Invoice not paid in time[/yellow]")

    run(_deposit())


@app.command()
def pay(
    target: Annotated[
        str, typer.Argument(help="BOLT11 invoice, Lightning address or LNURL")
    ],
    amount: Annotated[
        Optional[int], typer.Option("--amount", "-a", help="Amount for addresses")
    ] = None,
    memo: Annotated[Optional[str], typer.Option("--memo", help="Comment")] = None,
    nsec: NsecOption = None,
) -> None:
    """Pay a Lightning invoice or Lightning address."""

    async def _pay() -> None:
        async with open_session(nsec) as session:
            console.print(f"Current balance: {session.get_balance()} sat")
            result = await session.pay_invoice(target, amount, memo)
            if not result.success:
                console.print(f"[red]❌ {result.error}[/red]")
                raise typer.Exit(1)
            console.print(f"[green]✅ Payment successful! Fee: {result.fee} sat[/green]")
            console.print(f"Remaining balance: {session.get_balance()} sat")

    run(_pay())


@app.command()
def send(
    recipient: Annotated[str, typer.Argument(help="Recipient npub or hex pubkey")],
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    memo: Annotated[Optional[str], typer.Option("--memo", help="Message")] = None,
    nsec: NsecOption = None,
) -> None:
    """Send a nutzap to a Nostr user."""

    async def _send() -> None:
        async with open_session(nsec) as session:
            result = await session.send(recipient, amount, memo)
            if result.published:
                console.print(f"[green]✅ Sent {amount} sat nutzap[/green]")
                return
            console.print(f"[yellow]⚠️  {result.error}[/yellow]")
            console.print("Hand this token to the recipient instead:")
            console.print(result.token)

    run(_send())


@app.command()
def claim(nsec: NsecOption = None) -> None:
    """Redeem incoming nutzaps."""

    async def _claim() -> None:
        async with open_session(nsec) as session:
            result = await session.claim()
            if result.total == 0:
                console.print("[yellow]ℹ️ No new nutzaps[/yellow]")
                return
            console.print(
                f"[green]✅ Claimed {result.claimed} of {result.total} sat[/green]"
            )

    run(_claim())


@app.command()
def token(
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    memo: Annotated[Optional[str], typer.Option("--memo", help="Token memo")] = None,
    qr: Annotated[bool, typer.Option("--qr", help="Show token QR code")] = False,
    nsec: NsecOption = None,
) -> None:
    """Create a Cashu token to hand over out of band."""

    async def _token() -> None:
        async with open_session(nsec) as session:
            cashu_token = await session.generate_portable_token(amount, memo)
            console.print(cashu_token)
            if qr:
                display_qr_code(cashu_token, "Cashu Token")

    run(_token())


@app.command()
def receive(
    cashu_token: Annotated[str, typer.Argument(help="cashuA... or cashuB... token")],
    nsec: NsecOption = None,
) -> None:
    """Redeem a Cashu token."""

    async def _receive() -> None:
        async with open_session(nsec) as session:
            result = await session.receive_portable_token(cashu_token)
            if result.error:
                console.print(f"[red]❌ {result.error}[/red]")
                raise typer.Exit(1)
            console.print(f"[green]✅ Received {result.amount} sat[/green]")

    run(_receive())


@app.command()
def history(
    limit: Annotated[
        int, typer.Option("--limit", "-l", help="Maximum number of entries to show")
    ] = 20,
    nsec: NsecOption = None,
) -> None:
    """Show recent transactions."""

    async def _history() -> None:
        async with open_session(nsec) as session:
            entries = session.get_history(limit)
            if not entries:
                console.print("[yellow]ℹ️ No transactions yet[/yellow]")
                return
            table = Table(show_header=True, header_style="bold cyan")
            table.add_column("Date", style="dim")
            table.add_column("Type")
            table.add_column("Amount", justify="right", style="green")
            table.add_column("Fee", justify="right")
            table.add_column("Memo")
            for tx in entries:
                table.add_row(
                    datetime.fromtimestamp(tx.timestamp).strftime("%Y-%m-%d %H:%M"),
                    tx.kind,
                    f"{tx.amount} sat",
                    "" if tx.fee is None else str(tx.fee),
                    tx.memo or "",
                )
            console.print(table)

    run(_history())


@app.command()
def discover(
    owner: Annotated[
        Optional[str], typer.Argument(help="npub or hex pubkey (default: yourself)")
    ] = None,
    nsec: NsecOption = None,
) -> None:
    """Look up the public wallet descriptor of a Nostr user."""

    async def _discover() -> None:
        async with open_session(nsec) as session:
            descriptor = await session.discover(owner)
            if descriptor is None:
                console.print("[yellow]No wallet found[/yellow]")
                return
            console.print(f"[cyan]{descriptor.name or 'Wallet'}[/cyan]")
            console.print(f"Owner: {encode_npub(descriptor.owner_pubkey)}")
            console.print(f"Mint: {descriptor.mint_url}")
            console.print(f"Balance hint: {descriptor.balance_hint} sat")

    run(_discover())


@app.command()
def reset(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    nsec: NsecOption = None,
) -> None:
    """Erase all locally stored wallet data for this key."""
    if not yes and not Confirm.ask("This deletes local proofs. Continue?"):
        raise typer.Exit()

    async def _reset() -> None:
        async with open_session(nsec) as session:
            await session.reset()
            console.print("[green]✅ Local wallet data cleared[/green]")

    run(_reset())


def version_callback(value: bool) -> None:
    if value:
        console.print(f"NutZap Wallet v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
) -> None:
    """NutZap - Cashu ecash wallet over Nostr.

    Configuration comes from the environment or a `.env` file:
    `NSEC`, `CASHU_MINTS`, `NOSTR_RELAYS`, `NUTZAP_DATA_DIR`.
    """


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
