#!/usr/bin/env python3
"""Run linters for isokv."""

import sys

from common import PACKAGE_DIR, TESTS_DIR, print_error, print_header, print_success, run


def lint() -> bool:
    """Run ruff over the package and the tests."""
    print_header("Running linters")
    success = True
    targets = [str(PACKAGE_DIR), str(TESTS_DIR)]

    try:
        run(["ruff", "check", *targets])
        print_success("ruff check passed")
    except Exception:
        print_error("ruff check failed")
        success = False

    try:
        run(["ruff", "format", "--check", *targets])
        print_success("ruff format check passed")
    except Exception:
        print_error("ruff format check failed")
        success = False

    return success


def main() -> int:
    if lint():
        print_header("All linters passed")
        return 0
    print_header("Some linters failed")
    return 1


if __name__ == "__main__":
    sys.exit(main())
