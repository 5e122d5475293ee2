#!/usr/bin/env python3
"""Run tests for isokv."""

import argparse
import sys

from common import TESTS_DIR, print_error, print_header, print_success, run


def run_tests(verbose: bool = False, keyword: str | None = None) -> bool:
    """Run the pytest suite."""
    print_header("Running tests")
    try:
        # Use sys.executable to ensure we use the same Python environment
        # where isokv is installed
        cmd = [sys.executable, "-m", "pytest", str(TESTS_DIR)]
        if verbose:
            cmd.append("-v")
        if keyword:
            cmd.extend(["-k", keyword])
        run(cmd)
        print_success("Tests passed")
        return True
    except Exception as e:
        print_error(f"Tests failed: {e}")
        return False


def run_scenarios() -> bool:
    """Print the anomaly matrix for every isolation level."""
    print_header("Running anomaly scenarios")
    try:
        run([sys.executable, "-m", "isokv.scenarios"])
        print_success("Scenarios completed")
        return True
    except Exception as e:
        print_error(f"Scenarios failed: {e}")
        return False


def main() -> int:
    parser = argparse.ArgumentParser(description="Run isokv tests")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-k", dest="keyword", help="Only run tests matching this expression")
    parser.add_argument(
        "--scenarios", action="store_true", help="Also print the anomaly scenario matrix"
    )
    args = parser.parse_args()

    success = run_tests(verbose=args.verbose, keyword=args.keyword)

    if args.scenarios:
        if not run_scenarios():
            success = False

    if success:
        print_header("All tests passed")
    else:
        print_header("Some tests failed")

    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
