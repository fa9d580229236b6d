#!/usr/bin/env python3
"""
Test runner for the directory sync engine.

Loads every test_*.py module in this directory into one unittest suite
and prints a per-module summary.
"""

import os
import sys
import unittest

# Add the project directory and this directory to the path
TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(TESTS_DIR))
sys.path.insert(0, TESTS_DIR)


def find_test_modules():
    """Return the sorted module names of the test files next to this script."""
    return sorted(
        name[:-3] for name in os.listdir(TESTS_DIR)
        if name.startswith('test_') and name.endswith('.py')
    )


def main(argv=None):
    """Run the selected (or all) test modules."""
    modules = (argv if argv is not None else sys.argv[1:]) or find_test_modules()
    if not modules:
        print("No test files found!")
        return 1

    print(f"Running {len(modules)} test module(s)")
    loader = unittest.TestLoader()
    runner = unittest.TextTestRunner(verbosity=1)
    failed = []

    for module_name in modules:
        print(f"\n{'=' * 60}\n{module_name}\n{'=' * 60}")
        result = runner.run(loader.loadTestsFromName(module_name))
        if not result.wasSuccessful():
            failed.append(module_name)

    print(f"\n{'=' * 60}")
    print("TEST SUMMARY")
    print('=' * 60)
    print(f"Modules: {len(modules)}  Passed: {len(modules) - len(failed)}  Failed: {len(failed)}")
    for module_name in failed:
        print(f"  - {module_name}")
    return 0 if not failed else 1


if __name__ == "__main__":
    sys.exit(main())
