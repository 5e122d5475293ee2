#!/usr/bin/env python3
"""Format code in isokv."""

import argparse
import sys

from common import PACKAGE_DIR, TESTS_DIR, print_error, print_header, print_success, run


def format_code(fix: bool = True) -> bool:
    """Format code with ruff, then apply safe lint fixes."""
    print_header("Formatting code")
    success = True
    targets = [str(PACKAGE_DIR), str(TESTS_DIR)]

    try:
        run(["ruff", "format", *targets])
        print_success("ruff format completed")
    except Exception:
        print_error("ruff format failed")
        success = False

    if fix:
        try:
            run(["ruff", "check", "--fix", *targets])
            print_success("ruff check --fix completed")
        except Exception:
            print_error("ruff check --fix failed")
            success = False

    return success


def main() -> int:
    parser = argparse.ArgumentParser(description="Format isokv code")
    parser.add_argument(
        "--no-fix", action="store_true", help="Only reformat, skip ruff check --fix"
    )
    args = parser.parse_args()

    if format_code(fix=not args.no_fix):
        print_header("Formatting complete")
        return 0
    print_header("Formatting completed with errors")
    return 1


if __name__ == "__main__":
    sys.exit(main())
