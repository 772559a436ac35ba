import argparse
import os
import sys
import time
from typing import List, Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mfs import Inode, Superblock
from mfsapi import MinixFilesystem, inode_summary, open_image, superblock_summary
from mfserrors import MinixError

LOG_LEVEL_ENV = "MINIX_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

commands = {}


def command(name, description):
    def decorator(func):
        commands[name] = {"func": func, "description": description}
        return func
    return decorator


def configure_logging(verbose: bool = False):
    """Send loguru output to stderr at the requested level"""
    level = "DEBUG" if verbose else os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    try:
        logger.level(level)
        unknown = None
    except ValueError:
        unknown, level = level, DEFAULT_LOG_LEVEL

    logger.remove()
    logger.add(sys.stderr, level=level, format="<level>{level: <8}</level> | {message}")
    if unknown is not None:
        logger.warning("Unknown log level {!r} in {}, using {}", unknown, LOG_LEVEL_ENV, level)


def _base_parser(prog: str, usage: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, usage=usage)
    parser.add_argument("-v", "--verbose", action="store_true", help="increase verbosity level")
    parser.add_argument(
        "-p", "--partition", type=int, metavar="part",
        help="select partition for filesystem (default: none)",
    )
    parser.add_argument(
        "-s", "--subpartition", type=int, metavar="sub",
        help="select subpartition for filesystem (default: none)",
    )
    parser.add_argument("imagefile")
    return parser


def print_superblock(superblock: Superblock):
    table = Table(title="Superblock Contents", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value", justify="right")
    for field, value in superblock_summary(superblock).items():
        shown = f"0x{value:04x}" if field == "magic" else str(value)
        table.add_row(field, shown)
    err_console.print(table)


def print_inode(inode: Inode):
    table = Table(title="File inode", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    info = inode_summary(inode)
    table.add_row("mode", f"0x{inode.mode:x} ({info['permissions']})")
    for field in ("links", "uid", "gid", "size"):
        table.add_row(field, str(info[field]))
    for field in ("atime", "mtime", "ctime"):
        stamp = info[field]
        table.add_row(field, f"{stamp} --- {time.ctime(stamp)}")
    for i, zone_num in enumerate(inode.zone):
        table.add_row(f"zone[{i}]", str(zone_num))
    table.add_row("indirect", str(inode.indirect))
    table.add_row("double", str(inode.double_indirect))
    err_console.print(table)


def _report(prog: str, error: BaseException):
    err_console.print(f"[bold red]{prog}:[/bold red] {escape(str(error))}", soft_wrap=True)


def _open(args) -> MinixFilesystem:
    configure_logging(args.verbose)
    fs = open_image(args.imagefile, args.partition, args.subpartition)
    if args.verbose:
        print_superblock(fs.superblock)
    return fs


@command("minls", "List a file or directory inside a MINIX image")
def minls_main(argv: Optional[List[str]] = None) -> int:
    parser = _base_parser("minls", "minls [-v] [-p part [-s sub]] imagefile [path]")
    parser.add_argument("path", nargs="?", default="/")
    args = parser.parse_args(argv)

    try:
        with _open(args) as fs:
            inode = fs.resolve(args.path)
            if args.verbose:
                print_inode(inode)
            rows = fs.list_path(args.path, inode)
    except (MinixError, OSError) as e:
        _report("minls", e)
        return 1

    if inode.is_directory:
        console.print(f"{escape(args.path)}:", soft_wrap=True)
    for permissions, size, name in rows:
        shown = escape(name)
        if permissions.startswith("d"):
            shown = f"[bold blue]{shown}[/bold blue]"
        console.print(f"{permissions} {size:9d} {shown}", soft_wrap=True)
    return 0


@command("minget", "Copy a regular file out of a MINIX image")
def minget_main(argv: Optional[List[str]] = None) -> int:
    parser = _base_parser("minget", "minget [-v] [-p part [-s sub]] imagefile srcpath [dstpath]")
    parser.add_argument("srcpath")
    parser.add_argument("dstpath", nargs="?")
    args = parser.parse_args(argv)

    try:
        with _open(args) as fs:
            inode = fs.resolve(args.srcpath)
            if args.verbose:
                print_inode(inode)

            if args.dstpath:
                with open(args.dstpath, "wb") as output:
                    written = fs.read_file(args.srcpath, output, inode)
            else:
                sys.stdout.flush()
                output = sys.stdout.buffer
                written = fs.read_file(args.srcpath, output, inode)
                output.flush()
    except (MinixError, OSError) as e:
        # Bytes already written to the destination are kept
        _report("minget", e)
        return 1

    logger.debug("Extracted {} bytes from {}", written, args.srcpath)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in commands:
        err_console.print("Usage: mintools {minls|minget} ...")
        for name, entry in sorted(commands.items()):
            err_console.print(f"  {name}: {entry['description']}")
        return 1
    return commands[argv[0]]["func"](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
