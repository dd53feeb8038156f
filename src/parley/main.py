"""
Parley - Key store maintenance command line.

Created by orpheus497

Inspects and maintains the local key store: list conversation keys,
initialize the user key, export or import a password-protected backup,
and clear every key.
"""

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .config import Config, setup_logging
from .errors import ParleyError
from .keystore import KeyStore
from .utils import format_key_preview, truncate_string

console = Console()


def _load_config(args: argparse.Namespace) -> Config:
    config = Config(Path(args.config).expanduser() if args.config else None)
    if args.data_dir:
        config.set("storage", "data_dir", str(Path(args.data_dir).expanduser().resolve()))
    if args.debug:
        config.set("logging", "level", "DEBUG")
    return config


def _read_password(confirm: bool) -> str:
    password = getpass.getpass("Backup password: ")
    if confirm and password != getpass.getpass("Confirm password: "):
        console.print("[red]Passwords do not match.[/red]")
        sys.exit(1)
    return password


async def cmd_list(keystore: KeyStore, args: argparse.Namespace) -> int:
    conversations = sorted(await keystore.list_conversations())
    if not conversations:
        console.print("No conversation keys stored.")
        return 0

    table = Table(title="Conversation Keys", show_header=True, header_style="bold cyan")
    table.add_column("Conversation", style="bold")
    table.add_column("Key")
    for conversation_id in conversations:
        key = await keystore.get_conversation_key(conversation_id)
        table.add_row(truncate_string(conversation_id, 40), format_key_preview(key or b""))
    console.print(table)
    return 0


async def cmd_show(keystore: KeyStore, args: argparse.Namespace) -> int:
    key = await keystore.get_conversation_key(args.conversation_id)
    if key is None:
        console.print(f"[yellow]No key stored for {args.conversation_id}[/yellow]")
        return 1
    console.print(f"{args.conversation_id}: {format_key_preview(key)}")
    return 0


async def cmd_init_user(keystore: KeyStore, args: argparse.Namespace) -> int:
    key = await keystore.initialize_user_key(args.user)
    console.print(f"User key for {args.user}: {format_key_preview(key)}")
    return 0


async def cmd_export(keystore: KeyStore, args: argparse.Namespace) -> int:
    backup = await keystore.export_backup(args.user, _read_password(confirm=True))
    output = Path(args.output).expanduser()
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(backup, indent=2), encoding="utf-8")
    console.print(f"[green]Backup written to {output}[/green]")
    return 0


async def cmd_import(keystore: KeyStore, args: argparse.Namespace) -> int:
    source = Path(args.backup_file).expanduser()
    try:
        backup = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read backup file: {e}[/red]")
        return 1

    restored = await keystore.import_backup(args.user, backup, _read_password(confirm=False))
    console.print(f"[green]Restored {restored} conversation keys.[/green]")
    return 0


async def cmd_clear(keystore: KeyStore, args: argparse.Namespace) -> int:
    if not args.yes and not Confirm.ask("Remove every stored key?", default=False):
        console.print("Aborted.")
        return 1
    removed = await keystore.clear_all_keys()
    console.print(f"Removed {removed} keys.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parley-keys",
        description="Parley - Local key store maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  parley-keys list                          # List stored conversation keys
  parley-keys export --user u1 -o keys.json # Export a password-protected backup
  parley-keys import --user u1 keys.json    # Restore keys from a backup

Created by orpheus497
        """,
    )
    parser.add_argument("--version", action="version", version=f"Parley {__version__}")
    parser.add_argument("--config", type=str, default=None, help="Path to config.toml")
    parser.add_argument(
        "--data-dir", type=str, default=None, help="Data directory holding the key store"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List conversation keys")
    list_parser.set_defaults(handler=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show one conversation key")
    show_parser.add_argument("conversation_id")
    show_parser.set_defaults(handler=cmd_show)

    init_parser = subparsers.add_parser("init-user", help="Create the user key if missing")
    init_parser.add_argument("--user", required=True)
    init_parser.set_defaults(handler=cmd_init_user)

    export_parser = subparsers.add_parser("export", help="Export an encrypted key backup")
    export_parser.add_argument("--user", required=True)
    export_parser.add_argument("-o", "--output", required=True)
    export_parser.set_defaults(handler=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import an encrypted key backup")
    import_parser.add_argument("--user", required=True)
    import_parser.add_argument("backup_file")
    import_parser.set_defaults(handler=cmd_import)

    clear_parser = subparsers.add_parser("clear", help="Remove every stored key")
    clear_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask")
    clear_parser.set_defaults(handler=cmd_clear)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for parley-keys."""
    args = build_parser().parse_args(argv)

    try:
        config = _load_config(args)
        setup_logging(config)
        keystore = KeyStore.open(config.keystore_path())
    except ParleyError as e:
        console.print(str(e), style="red", markup=False)
        return 2

    try:
        return asyncio.run(args.handler(keystore, args))
    except ParleyError as e:
        console.print(str(e), style="red", markup=False)
        return 1
    finally:
        keystore.close()


if __name__ == "__main__":
    sys.exit(main())
