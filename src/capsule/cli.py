"""
Capsule - Command line interface.

Created by orpheus497
"""

import argparse
import asyncio
import logging
import os
import shlex
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional, Set

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import Config
from .constants import ARCHIVE_FILENAME
from .crypto import SecretManager, generate_passphrase
from .errors import CapsuleError, ErrorCode, NotConnected, SecretRequired
from .file_transfer import SEND, ReceivedFile, TransferChannel
from .items import FileItem
from .logging_setup import setup_logging
from .qr_code import blob_to_terminal, export_qr_png, generate_qr_code, scan_blob
from .signaling import SignalingSession
from .storage import open_storage
from .utils import format_size
from .vault import VaultStore

logger = logging.getLogger(__name__)

PASSPHRASE_ENV = "CAPSULE_PASSPHRASE"
CHANNEL_TIMEOUT = 120.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capsule",
        description="Capsule - Passphrase-encrypted peer-to-peer file transfer and vault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  capsule genpass                      # Print a fresh passphrase
  capsule vault add report.pdf         # Encrypt a file into the vault
  capsule vault list                   # Show vault contents
  capsule offer --qr                   # Start a link and show the offer as a QR code
  capsule answer                       # Answer a pasted offer
  capsule config init                  # Write a default config.toml

Files are encrypted with a key derived from the shared passphrase. Chat
messages rely on the link's transport encryption only.

Created by orpheus497
        """,
    )

    parser.add_argument("--version", action="version", version=f"Capsule {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory for configuration, vault and logs (default: ~/.capsule)",
    )
    parser.add_argument("--config", type=str, default=None, help="Configuration file path")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    subparsers.add_parser("genpass", help="Print a fresh random passphrase")

    passphrase = argparse.ArgumentParser(add_help=False)
    passphrase.add_argument(
        "--passphrase",
        default=None,
        help=f"Shared passphrase (default: ${PASSPHRASE_ENV}, otherwise prompted)",
    )

    vault = subparsers.add_parser("vault", help="Manage the encrypted vault")
    vault_commands = vault.add_subparsers(dest="vault_command", metavar="ACTION")
    vault_commands.required = True

    add = vault_commands.add_parser("add", parents=[passphrase], help="Encrypt files into the vault")
    add.add_argument("files", nargs="+", help="Files to add")

    vault_commands.add_parser("list", parents=[passphrase], help="List vault items")
    vault_commands.add_parser("stats", parents=[passphrase], help="Show vault statistics")

    export = vault_commands.add_parser(
        "export-archive", parents=[passphrase], help="Write the whole vault to one archive file"
    )
    export.add_argument("output", nargs="?", default=ARCHIVE_FILENAME, help="Archive path")

    extract = vault_commands.add_parser(
        "extract", parents=[passphrase], help="Decrypt an item back to a plain file"
    )
    extract.add_argument("item_id", help="Item identifier (see 'vault list')")
    extract.add_argument("directory", nargs="?", default=None, help="Target directory")

    imp = vault_commands.add_parser(
        "import-archive", parents=[passphrase], help="Import items from an archive file"
    )
    imp.add_argument("input", help="Archive path")

    config = subparsers.add_parser("config", help="Manage the configuration file")
    config_commands = config.add_subparsers(dest="config_command", metavar="ACTION")
    config_commands.required = True

    init = config_commands.add_parser("init", help="Write a configuration file with the defaults")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    config_commands.add_parser("show", help="Print the effective configuration")

    set_value = config_commands.add_parser("set", help="Change one value in the configuration file")
    set_value.add_argument("section", help="Section name, e.g. transfer")
    set_value.add_argument("key", help="Key name, e.g. chunk_size")
    set_value.add_argument("value", help="New value (lists as JSON)")

    link = argparse.ArgumentParser(add_help=False, parents=[passphrase])
    link.add_argument("--qr", action="store_true", help="Also show the local blob as a QR code")
    link.add_argument("--qr-png", default=None, help="Also save the local blob QR code as PNG")
    link.add_argument("--scan", default=None, help="Read the peer blob from a QR code image")
    link.add_argument("--download-dir", default=None, help="Directory for received files")
    link.add_argument(
        "--timeout",
        type=float,
        default=CHANNEL_TIMEOUT,
        help=f"Seconds to wait for the link to open (default: {CHANNEL_TIMEOUT:.0f})",
    )

    subparsers.add_parser("offer", parents=[link], help="Start a link by creating an offer")
    subparsers.add_parser("answer", parents=[link], help="Join a link by answering an offer")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the capsule command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "genpass":
        console.print(generate_passphrase(), highlight=False, soft_wrap=True)
        return 0

    handlers = {"vault": run_vault, "config": run_config, "offer": run_link, "answer": run_link}

    try:
        data_dir = Path(args.data_dir).expanduser() if args.data_dir else None
        config_path = Path(args.config).expanduser() if args.config else None
        config = Config(config_path=config_path, data_dir=data_dir)
        setup_logging(config, debug=args.debug)
        return asyncio.run(handlers[args.command](args, config, console))
    except CapsuleError as e:
        console.print(f"[bold red]Error {e.code.value}:[/bold red] {escape(e.message)}")
        return 2
    except KeyboardInterrupt:
        console.print("\nInterrupted")
        return 130


def make_secrets(config: Config) -> SecretManager:
    return SecretManager(
        kdf=config.get("crypto", "kdf"),
        iterations=int(config.get("crypto", "pbkdf2_iterations")),
    )


def unlock(args: argparse.Namespace, config: Config, console: Console) -> SecretManager:
    """Build the secret manager and derive the room key."""
    secrets = make_secrets(config)

    passphrase = getattr(args, "passphrase", None) or os.environ.get(PASSPHRASE_ENV)
    if not passphrase and sys.stdin.isatty():
        passphrase = console.input("Passphrase: ", password=True)

    if not secrets.derive(passphrase):
        raise SecretRequired(message=f"A passphrase is required (--passphrase or ${PASSPHRASE_ENV})")
    return secrets


# Configuration commands


async def run_config(args: argparse.Namespace, config: Config, console: Console) -> int:
    if args.config_command == "init":
        if config.config_path.exists() and not args.force:
            console.print(
                f"Configuration already exists at [bold]{escape(str(config.config_path))}[/bold] "
                "(use --force to overwrite)"
            )
            return 1
        Config.create_example(config.config_path)
        console.print(f"Configuration written to [bold]{escape(str(config.config_path))}[/bold]")

    elif args.config_command == "show":
        console.print(f"# {config.config_path}", markup=False, highlight=False)
        console.print(config.to_toml(), markup=False, highlight=False)

    elif args.config_command == "set":
        # Start from the file alone so environment overrides are not persisted
        stored = Config(config_path=config.config_path, data_dir=config.data_dir, use_env=False)
        value = stored.set_from_string(args.section, args.key, args.value)
        stored.save()
        console.print(f"{args.section}.{args.key} = {escape(str(value))}")

    return 0


# Vault commands


async def run_vault(args: argparse.Namespace, config: Config, console: Console) -> int:
    needs_key = args.vault_command in ("add", "extract")
    secrets = unlock(args, config, console) if needs_key else make_secrets(config)
    store = VaultStore(
        secrets,
        storage=open_storage(config.vault_path),
        chunk_size=int(config.get("transfer", "chunk_size")),
    )

    if args.vault_command == "add":
        items = await store.add(Path(f) for f in args.files)
        console.print(items_table(items, title="Added"))

    elif args.vault_command == "list":
        items = await store.list()
        if items:
            console.print(items_table(items, title="Vault"))
        else:
            console.print("Vault is empty")

    elif args.vault_command == "stats":
        stats = await store.stats()
        console.print(
            f"{stats['items']} items, {format_size(stats['total_bytes'])} "
            f"({format_size(stats['stored_bytes'])} stored)"
        )

    elif args.vault_command == "export-archive":
        path = await store.write_archive(Path(args.output).expanduser())
        console.print(f"Archive written to [bold]{escape(str(path))}[/bold]")

    elif args.vault_command == "extract":
        directory = Path(args.directory).expanduser() if args.directory else config.download_dir
        path = await store.export_item(args.item_id, directory)
        console.print(f"Extracted to [bold]{escape(str(path))}[/bold]")

    elif args.vault_command == "import-archive":
        source = Path(args.input).expanduser()
        try:
            data = source.read_bytes()
        except OSError as e:
            raise CapsuleError(ErrorCode.E003_FILE_NOT_FOUND, f"Cannot read archive: {e}")
        items = await store.import_archive(data)
        console.print(f"Imported {len(items)} items")

    return 0


def items_table(items: List[FileItem], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("Added")

    for item in items:
        table.add_row(
            item.item_id,
            escape(item.name),
            item.mime_type,
            format_size(item.size),
            item.created_at,
        )
    return table


# Peer link


class LineReader:
    """Reads stdin lines on a daemon thread and hands them to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._thread = threading.Thread(target=self._pump, name="capsule-stdin", daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        for line in sys.stdin:
            if not self._put(line.rstrip("\r\n")):
                return
        self._put(None)

    def _put(self, line: Optional[str]) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, line)
        except RuntimeError:
            # Event loop already closed
            return False
        return True

    async def readline(self) -> Optional[str]:
        """Next line, or None at end of input."""
        return await self._queue.get()


async def run_link(args: argparse.Namespace, config: Config, console: Console) -> int:
    secrets = unlock(args, config, console)
    session = SignalingSession(
        secrets,
        ice_servers=config.get("network", "ice_servers"),
        gathering_timeout=float(config.get("network", "gathering_timeout")),
    )
    reader = LineReader(asyncio.get_running_loop())

    try:
        if args.command == "offer":
            show_blob(console, args, await session.create_offer(), "offer")
            await session.accept_answer(await read_blob(console, args, reader, "answer"))
        else:
            offer = await read_blob(console, args, reader, "offer")
            show_blob(console, args, await session.create_answer(offer), "answer")

        console.print("Waiting for the link to open...")
        channel = await session.wait_channel(timeout=args.timeout)
        console.print("[bold green]Connected.[/bold green] Type to chat, /send PATH to send files, /quit to leave.")

        download_dir = Path(args.download_dir).expanduser() if args.download_dir else config.download_dir
        await chat_loop(console, reader, channel, secrets, config, download_dir)
    finally:
        await session.close()

    return 0


def show_blob(console: Console, args: argparse.Namespace, blob: str, kind: str) -> None:
    console.print(f"\n[bold]Your {kind} blob[/bold] (send it to your peer):\n")
    console.print(blob, highlight=False, soft_wrap=True)
    if args.qr:
        console.print()
        console.print(blob_to_terminal(blob), highlight=False)
    if args.qr_png:
        path = export_qr_png(generate_qr_code(blob), Path(args.qr_png).expanduser())
        console.print(f"QR code saved to {escape(str(path))}")


async def read_blob(console: Console, args: argparse.Namespace, reader: LineReader, kind: str) -> str:
    if args.scan:
        return scan_blob(Path(args.scan).expanduser())

    console.print(f"\nPaste the peer's {kind} blob and press Enter:")
    line = await reader.readline()
    if not line:
        raise CapsuleError(ErrorCode.E002_INVALID_ARGUMENT, f"No {kind} blob given")
    return line.strip()


async def chat_loop(
    console: Console,
    reader: LineReader,
    channel: Any,
    secrets: SecretManager,
    config: Config,
    download_dir: Path,
) -> None:
    saves: Set[asyncio.Task] = set()

    def on_chat(text: str) -> None:
        console.print(f"[bold cyan]peer>[/bold cyan] {escape(text)}")

    def on_progress(direction: str, item: FileItem, done: int, total: int) -> None:
        if done == total:
            verb = "Sent" if direction == SEND else "Received"
            console.print(f"{verb} {escape(item.name)} ({format_size(total)})")

    def on_file(received: ReceivedFile) -> None:
        task = asyncio.ensure_future(received.save(download_dir))
        saves.add(task)
        task.add_done_callback(report_save)

    def report_save(task: asyncio.Task) -> None:
        saves.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            console.print(f"[red]Could not save file:[/red] {escape(str(task.exception()))}")
        else:
            console.print(f"Saved to [bold]{escape(str(task.result()))}[/bold]")

    transfer = TransferChannel(
        channel,
        secrets,
        chunk_size=int(config.get("transfer", "chunk_size")),
        on_chat=on_chat,
        on_file=on_file,
        on_progress=on_progress,
    )
    receiver = asyncio.ensure_future(transfer.run())

    while True:
        line_task = asyncio.ensure_future(reader.readline())
        done, _ = await asyncio.wait({line_task, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if receiver in done:
            line_task.cancel()
            console.print("[yellow]Peer disconnected.[/yellow]")
            break

        line = line_task.result()
        if line is None or line.strip() == "/quit":
            break

        try:
            if line.startswith("/send "):
                await transfer.send_files(Path(p).expanduser() for p in shlex.split(line[6:]))
            elif line.strip():
                transfer.send_chat(line)
        except NotConnected:
            console.print("[yellow]Link closed.[/yellow]")
            break
        except (CapsuleError, ValueError) as e:
            console.print(f"[red]{escape(str(e))}[/red]")

    if saves:
        await asyncio.gather(*saves, return_exceptions=True)
    if not receiver.done():
        receiver.cancel()
