from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from nac_emulator.errors import NacError
from nac_emulator.hooks import default_hooks
from nac_emulator.macho import get_slice, iter_fat_arches, parse_image
from nac_emulator.nac import BINARY_ENV, generate_validation_data, load_binary

logger = logging.getLogger("nac_emulator")

COMMANDS = ("generate", "imports", "slices")


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--binary",
        type=Path,
        default=None,
        help=f"IMDAppleServices fat binary (default: ${BINARY_ENV} or the bundled copy)",
    )
    parser.add_argument(
        "--no-download",
        action="store_true",
        help="fail instead of downloading the binary when it is missing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose diagnostic logs (stderr)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Generate validation data by emulating IMDAppleServices "
            "(default command is `generate` when omitted)"
        )
    )
    subparsers = parser.add_subparsers(dest="command")

    generate_parser = subparsers.add_parser("generate", help="print base64 validation data")
    _add_common_args(generate_parser)
    generate_parser.add_argument(
        "--emu-timeout-ms",
        type=int,
        default=0,
        help="per-routine emulation timeout in milliseconds (default: 0 = unlimited)",
    )
    generate_parser.add_argument(
        "--emu-max-insn",
        type=int,
        default=0,
        help="per-routine instruction count limit (default: 0 = unlimited)",
    )
    generate_parser.add_argument(
        "--trace",
        action="store_true",
        help="log every emulated instruction (implies --verbose)",
    )

    imports_parser = subparsers.add_parser(
        "imports", help="list bound imports of the x86_64 slice and their hook coverage"
    )
    _add_common_args(imports_parser)
    imports_parser.add_argument(
        "--missing-only",
        action="store_true",
        help="only print imported symbols that have no hook",
    )

    slices_parser = subparsers.add_parser("slices", help="list the architectures in the container")
    _add_common_args(slices_parser)
    return parser


def _read_binary(args: argparse.Namespace, verify: bool) -> bytes:
    return load_binary(args.binary, download=not args.no_download, verify=verify)


def _cmd_generate(args: argparse.Namespace) -> int:
    binary = _read_binary(args, verify=args.binary is None)
    print(
        generate_validation_data(
            binary=binary,
            timeout_ms=args.emu_timeout_ms,
            max_insn=args.emu_max_insn,
            trace=args.trace,
        )
    )
    return 0


def _cmd_imports(args: argparse.Namespace) -> int:
    image = parse_image(get_slice(_read_binary(args, verify=False)))
    table = default_hooks()
    symbols = image.imported_symbols()
    missing = table.missing(symbols)

    if args.missing_only:
        for name in missing:
            print(name)
    else:
        for slot, name in sorted(image.binds.items()):
            state = "hooked" if name in table else "MISSING"
            print(f"0x{slot:08x} {name} {state}")
    print(f"[OK] {len(symbols)} imported symbols, {len(missing)} without hook.", file=sys.stderr)
    return 0


def _cmd_slices(args: argparse.Namespace) -> int:
    for entry in iter_fat_arches(_read_binary(args, verify=False)):
        print(f"{entry.arch} offset=0x{entry.offset:x} size=0x{entry.size:x} align={entry.align}")
    return 0


def main(argv: list[str] | None = None) -> int:
    raw_argv = list(argv) if argv is not None else list(sys.argv[1:])
    parse_argv = raw_argv
    if not raw_argv or raw_argv[0].strip().lower() not in {*COMMANDS, "-h", "--help"}:
        parse_argv = ["generate", *raw_argv]

    args = _build_parser().parse_args(parse_argv)
    _configure_logging(bool(args.verbose or getattr(args, "trace", False)))
    logger.debug("command=%s binary=%s", args.command, args.binary)

    handlers = {
        "generate": _cmd_generate,
        "imports": _cmd_imports,
        "slices": _cmd_slices,
    }
    try:
        return handlers[args.command](args)
    except NacError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
