import argparse
import json
import logging

from pathlib import Path
from typing import Callable

from diaryvault.utils.core import VaultManager
from diaryvault.utils.dataModels import DEFAULT_TEXT_ENCRYPTION, SUPPORTED_TEXT_ENCRYPTIONS
from diaryvault.utils.helper import default_vault_root, format_ts


def _open(args: argparse.Namespace) -> VaultManager:
    manager = VaultManager()
    resp = manager.unlock(args.passphrase, Path(args.vault), getattr(args, "encryption", None))
    if resp.created:
        print(f"[+] Initialized vault at {resp.vault_root}")
    return manager


def with_vault(func: Callable[[VaultManager, argparse.Namespace], None]) -> Callable[[argparse.Namespace], None]:
    def run(args: argparse.Namespace) -> None:
        manager = _open(args)
        try:
            func(manager, args)
        finally:
            manager.lock()
    return run


def cmd_init(args: argparse.Namespace) -> None:
    manager = VaultManager()
    resp = manager.unlock(args.passphrase, Path(args.vault), args.encryption)
    manager.lock()
    if resp.created:
        print(f"[+] Initialized vault at {resp.vault_root}")
    else:
        print(f"[+] Vault at {resp.vault_root} already exists ({len(resp.entries)} entries)")


@with_vault
def cmd_ls(manager: VaultManager, args: argparse.Namespace) -> None:
    entries = manager.list()
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], ensure_ascii=False, indent=2))
        return
    if not entries:
        print("(empty)")
        return
    for e in entries:
        folder = f"\t[{e.folder}]" if e.folder else ""
        print(f"{e.id}\t{format_ts(e.updated_at)}\t{e.title}{folder}")


@with_vault
def cmd_show(manager: VaultManager, args: argparse.Namespace) -> None:
    entry = manager.load_entry(args.id)
    print(f"# {entry.title}")
    print(entry.content)


def _read_content(args: argparse.Namespace) -> str | None:
    if args.file:
        return Path(args.file).read_text(encoding="utf-8")
    return args.content


@with_vault
def cmd_add(manager: VaultManager, args: argparse.Namespace) -> None:
    entry = manager.create_entry(args.title, _read_content(args))
    print(f"[+] Added entry {entry.title!r} as id={entry.id}")


@with_vault
def cmd_edit(manager: VaultManager, args: argparse.Namespace) -> None:
    entry = manager.load_entry(args.id)
    if args.title is not None:
        entry.title = args.title
    if args.folder is not None:
        entry.folder = args.folder or None
    content = _read_content(args)
    if content is not None:
        entry.content = content
    updated = manager.update_entry(entry)
    print(f"[+] Updated id={updated.id}")


@with_vault
def cmd_rm(manager: VaultManager, args: argparse.Namespace) -> None:
    manager.delete_entry(args.id)
    print(f"[+] Removed id={args.id}")


@with_vault
def cmd_export(manager: VaultManager, args: argparse.Namespace) -> None:
    if args.file:
        target = manager.export_plaintext_file()
        print(f"[+] Exported to {target}")
    else:
        print(manager.export_plaintext())


@with_vault
def cmd_attach(manager: VaultManager, args: argparse.Namespace) -> None:
    rel = manager.store_image(args.path)
    print(f"[+] Stored {Path(args.path).name} as {rel}")


@with_vault
def cmd_image(manager: VaultManager, args: argparse.Namespace) -> None:
    data = manager.decrypt_image(args.path)
    Path(args.out).write_bytes(data)
    print(f"[+] Extracted {args.path} -> {args.out}")


@with_vault
def cmd_passwd(manager: VaultManager, args: argparse.Namespace) -> None:
    manager.change_passphrase(args.passphrase, args.new_passphrase)
    print("[+] Passphrase changed.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="diaryvault", description="Encrypted local journal")
    p.add_argument("--vault", default=str(default_vault_root()), help="Vault directory (default: $DIARYVAULT_HOME or ~/.diaryvault)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    def command(name: str, func, help: str) -> argparse.ArgumentParser:
        sp = sub.add_parser(name, help=help)
        sp.add_argument("--passphrase", required=True)
        sp.set_defaults(func=func)
        return sp

    p_init = command("init", cmd_init, "Create a vault (or verify an existing one)")
    p_init.add_argument(
        "--encryption",
        choices=[t.value for t in SUPPORTED_TEXT_ENCRYPTIONS],
        default=DEFAULT_TEXT_ENCRYPTION.value,
        help="Text encryption method, fixed for the life of the vault",
    )

    p_ls = command("ls", cmd_ls, "List entries, most recently updated first")
    p_ls.add_argument("--json", action="store_true", help="Print entries as JSON")

    p_show = command("show", cmd_show, "Print one entry")
    p_show.add_argument("id", help="Entry id (UUID)")

    p_add = command("add", cmd_add, "Create an entry")
    p_add.add_argument("--title")
    grp = p_add.add_mutually_exclusive_group()
    grp.add_argument("--content")
    grp.add_argument("--file", help="Read content from a UTF-8 text file")

    p_edit = command("edit", cmd_edit, "Update an entry")
    p_edit.add_argument("id", help="Entry id (UUID)")
    p_edit.add_argument("--title")
    p_edit.add_argument("--folder", help="Folder name ('' clears it)")
    grp = p_edit.add_mutually_exclusive_group()
    grp.add_argument("--content")
    grp.add_argument("--file", help="Read content from a UTF-8 text file")

    p_rm = command("rm", cmd_rm, "Delete an entry")
    p_rm.add_argument("id", help="Entry id (UUID)")

    p_exp = command("export", cmd_export, "Export all entries as plaintext")
    p_exp.add_argument("--file", action="store_true", help="Write to exports/diary-<date>.md instead of stdout")

    p_att = command("attach", cmd_attach, "Encrypt an image into the vault")
    p_att.add_argument("path", help="Image file to add")

    p_img = command("image", cmd_image, "Decrypt a stored image")
    p_img.add_argument("path", help="Vault-relative or absolute attachment path")
    p_img.add_argument("out", help="Output path")

    p_pw = command("passwd", cmd_passwd, "Change the vault passphrase")
    p_pw.add_argument("--new-passphrase", required=True)

    return p


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
