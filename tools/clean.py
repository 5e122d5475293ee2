#!/usr/bin/env python3
"""Clean build artifacts from isokv."""

import shutil
import sys

from common import ROOT_DIR, print_header, print_success


def clean() -> None:
    """Remove build, cache and bytecode artifacts."""
    print_header("Cleaning artifacts")

    dirs_to_remove = [
        ROOT_DIR / "build",
        ROOT_DIR / "dist",
        ROOT_DIR / ".pytest_cache",
        ROOT_DIR / ".ruff_cache",
    ]

    # Find all egg-info directories
    dirs_to_remove.extend(ROOT_DIR.glob("*.egg-info"))

    # Find all __pycache__ directories
    dirs_to_remove.extend(ROOT_DIR.rglob("__pycache__"))

    for d in dirs_to_remove:
        if d.exists():
            print(f"  Removing {d.relative_to(ROOT_DIR)}")
            shutil.rmtree(d)

    for f in ROOT_DIR.rglob("*.pyc"):
        print(f"  Removing {f.relative_to(ROOT_DIR)}")
        f.unlink()

    print_success("Artifacts cleaned")


def main() -> int:
    clean()
    print_header("Clean complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
