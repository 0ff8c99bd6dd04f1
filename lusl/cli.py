from __future__ import annotations

import argparse
import getpass as _getpass
import os
import sys
import time
from typing import List, Optional

from lusl.constants import ARGON_MEMORY_COST_KIB, ARGON_PARALLELISM, ARGON_TIME_COST
from lusl.deserializer import Deserializer, read_archive_metadata
from lusl.encryption import KdfParams
from lusl.errors import LuslError
from lusl.logging_config import setup_logging
from lusl.option import SerializeOption
from lusl.serializer import Serializer


PASSWORD_ENV = "LUSL_PASSWORD"


def _resolve_password(password: Optional[str], ask: bool, *, confirm: bool = False) -> Optional[str]:
    """Pick the password from --password, an interactive prompt, or LUSL_PASSWORD."""
    if password is not None:
        return password
    if ask:
        pw = _getpass.getpass("Archive password: ")
        if confirm and _getpass.getpass("Repeat password: ") != pw:
            raise ValueError("Passwords do not match")
        return pw
    return os.environ.get(PASSWORD_ENV) or None


def _build_option(
    password: Optional[str],
    *,
    compress: bool = False,
    workers: int = 1,
    kdf: Optional[KdfParams] = None,
) -> SerializeOption:
    option = SerializeOption(compress=compress, workers=workers, kdf=kdf or KdfParams())
    if password is not None:
        option = option.to_encrypt(password)
    return option


def cmd_pack(
    source: str,
    output: str,
    *,
    password: Optional[str] = None,
    compress: bool = False,
    workers: int = 1,
    kdf: Optional[KdfParams] = None,
    quiet: bool = False,
) -> bool:
    """Pack the ``source`` directory into the archive ``output``.

    Args:
        source: Directory whose regular files are stored.
        output: Archive path to write (replaced atomically).
        password: Optional password; enables XChaCha20-Poly1305 encryption.
        compress: zlib-compress the data section (requires a password).
        workers: Threads used to read and hash files.
        kdf: Argon2id costs; the same values are needed to unpack.
    """
    t0 = time.time()
    serializer = Serializer(source, output)
    serializer.set_options(_build_option(password, compress=compress, workers=workers, kdf=kdf))
    records = serializer.serialize()
    if not quiet:
        for r in records:
            print(f"  adding: {r.path} ({r.size} bytes)")
    dt = max(0.000001, time.time() - t0)
    total = sum(r.size for r in records)
    mode = "plain"
    if password is not None:
        mode = "encrypted+compressed" if compress else "encrypted"
    print(f"Done: {len(records)} files; {total / (1024.0 * 1024.0):.2f} MiB in {dt:.1f}s; variant={mode}")
    return True


def cmd_unpack(
    archive: str,
    outdir: str,
    *,
    password: Optional[str] = None,
    kdf: Optional[KdfParams] = None,
    quiet: bool = False,
) -> bool:
    """Restore ``archive`` into ``outdir``; nothing is written unless every file verifies."""
    t0 = time.time()
    deserializer = Deserializer(archive, outdir)
    deserializer.set_options(_build_option(password, kdf=kdf))
    records = deserializer.deserialize()
    if not quiet:
        for r in records:
            print(f"  restoring: {r.path}")
    dt = max(0.000001, time.time() - t0)
    print(f"Done: {len(records)} files verified and restored in {dt:.1f}s")
    return True


def cmd_list(archive: str) -> bool:
    """Print the metadata table; the data section is not decoded."""
    header, records = read_archive_metadata(archive)
    if header.is_encrypted:
        variant = "encrypted+compressed" if header.is_compressed else "encrypted"
    else:
        variant = "plain"
    print(f"lusl archive v{header.version}, {variant}, {header.file_count} files")
    for r in records:
        print(f"{r.checksum.hex()}\t{r.size}\t{r.path}")
    return True


def _add_password_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--password", help=f"Archive password (or set {PASSWORD_ENV})")
    ap.add_argument("--ask-password", action="store_true", help="Prompt for the password")


def _add_kdf_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--kdf-time", type=int, default=ARGON_TIME_COST, help="Argon2id time cost")
    ap.add_argument("--kdf-memory", type=int, default=ARGON_MEMORY_COST_KIB, help="Argon2id memory cost in KiB")
    ap.add_argument("--kdf-parallelism", type=int, default=ARGON_PARALLELISM, help="Argon2id lanes")


def _kdf_from_args(args) -> KdfParams:
    return KdfParams(time_cost=args.kdf_time, memory_cost_kib=args.kdf_memory, parallelism=args.kdf_parallelism)


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="lusl",
        description="Lossless directory serializer",
        epilog="Unpacking needs the same password and --kdf-* values used for packing.",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_pack = sub.add_parser("pack", help="Pack a directory into an archive")
    ap_pack.add_argument("source", help="Directory to pack")
    ap_pack.add_argument("output", help="Archive path")
    ap_pack.add_argument("--compress", action="store_true", help="Compress data (requires a password)")
    ap_pack.add_argument("--workers", "-j", type=int, default=1, help="Threads for reading files (default 1)")
    ap_pack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")
    _add_password_args(ap_pack)
    _add_kdf_args(ap_pack)

    ap_unpack = sub.add_parser("unpack", help="Restore an archive into a directory")
    ap_unpack.add_argument("archive", help="Archive path")
    ap_unpack.add_argument("outdir", help="Destination directory")
    ap_unpack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")
    _add_password_args(ap_unpack)
    _add_kdf_args(ap_unpack)

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive path")

    args = ap.parse_args(argv)
    setup_logging("DEBUG" if args.verbose else None)
    try:
        if args.cmd == "pack":
            password = _resolve_password(args.password, args.ask_password, confirm=True)
            cmd_pack(
                args.source,
                args.output,
                password=password,
                compress=args.compress,
                workers=args.workers,
                kdf=_kdf_from_args(args),
                quiet=args.quiet,
            )
        elif args.cmd == "unpack":
            password = _resolve_password(args.password, args.ask_password)
            cmd_unpack(args.archive, args.outdir, password=password, kdf=_kdf_from_args(args), quiet=args.quiet)
        elif args.cmd == "list":
            cmd_list(args.archive)
        else:
            raise RuntimeError("Unknown command")
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (LuslError, OSError) as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
