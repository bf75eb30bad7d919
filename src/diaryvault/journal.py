#!/usr/bin/env python3
"""
diaryvault – passphrase-protected local journal

Vault layout:
  <root>/
    vault.json                         # salt + AES-256-GCM sealed entry index
    entries/<uuid>.bin                 # one AES-256-GCM envelope per entry
    attachments/<yyyy>/<mm>/<uuid>.ext # VAULTIMG || marker || IV || AES-256-CTR
    exports/diary-<yyyy>-<mm>-<dd>.md  # plaintext export, on demand

Key = Argon2id(passphrase, salt), fixed cost parameters. The key is never
stored; a wrong passphrase and a damaged vault fail the same way.

Commands:
  init      Create a vault
  ls        List entries
  show      Print an entry
  add       Create an entry
  edit      Update an entry's title, folder or content
  rm        Delete an entry
  export    Plaintext export (stdout or exports/)
  attach    Encrypt an image into attachments/
  image     Decrypt an attachment
  passwd    Change the passphrase (re-encrypts everything)
"""
from __future__ import annotations

import sys

from diaryvault.ui.cli import build_parser, configure_logging
from diaryvault.utils.errors import VaultError, error_message


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    try:
        args.func(args)
    except VaultError as e:
        print(f"[!] {error_message(e)}")
        return 1
    except OSError as e:
        print(f"[!] {e.strerror or e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
