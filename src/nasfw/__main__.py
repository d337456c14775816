"""Module entrypoint.

Allows: python -m nasfw <source> <destdir>
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .config import Settings
from .policy import FatalPrecondition
from .run import run_extraction

_EXIT_FATAL = 20


def _build_parser() -> argparse.ArgumentParser:
    epilog = textwrap.dedent(
        """\
        forms:
          nasfw-extract firmware.img destdir
          nasfw-extract firmware.img.tgz destdir
          nasfw-extract srcdir destdir

        results:
          destdir/fw          files extracted from the firmware image
          destdir/sysroot     unpacked initrd/initramfs, rootfs2, rootfs_ext
          destdir/qpkg        unpacked qpkg.tar
          destdir/sysroot.txt listing of destdir/sysroot
        """
    )
    parser = argparse.ArgumentParser(
        prog="nasfw-extract",
        description=f"nasfw {__version__}: extract the contents of a QNAP firmware image",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _ = parser.add_argument(
        "source",
        nargs="?",
        help="firmware image, decrypted firmware archive, or extracted source directory",
    )
    _ = parser.add_argument(
        "destdir",
        nargs="?",
        help="destination directory (must not exist)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.source is None or args.destdir is None:
        parser.print_help()
        return 0

    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        report = run_extraction(
            Path(args.source), Path(args.destdir), settings=settings
        )
    except FatalPrecondition as e:
        print(str(e), file=sys.stderr)
        return _EXIT_FATAL

    print("-" * 46)
    print(f"done: status={report.status}")
    for lim in report.limitations:
        print(f"  ! {lim}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
