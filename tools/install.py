#!/usr/bin/env python3
"""Install isokv."""

import argparse
import sys

from common import print_error, print_header, print_success, run


def install(extra: str | None = None) -> bool:
    """Install the package in editable mode, optionally with an extra."""
    print_header("Installing isokv")
    target = f".[{extra}]" if extra else "."
    try:
        run([sys.executable, "-m", "pip", "install", "-e", target])
        print_success("isokv installed")
        return True
    except Exception as e:
        print_error(f"Failed to install isokv: {e}")
        return False


def main() -> int:
    parser = argparse.ArgumentParser(description="Install isokv")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--dev", action="store_true", help="Install with development dependencies (ruff)"
    )
    group.add_argument("--test", action="store_true", help="Install with test dependencies")
    args = parser.parse_args()

    extra = "dev" if args.dev else "test" if args.test else None
    if install(extra):
        print_header("Installation complete")
        return 0
    print_header("Installation completed with errors")
    return 1


if __name__ == "__main__":
    sys.exit(main())
