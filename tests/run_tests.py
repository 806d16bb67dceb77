#!/usr/bin/env python3
"""
Test runner for LDAP Groups Sync.

Discovers and runs every test_*.py module in the tests directory.
"""

import os
import sys
import unittest


def main():
    """Run all tests and return a process exit code."""
    tests_dir = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, os.path.dirname(tests_dir))
    
    suite = unittest.defaultTestLoader.discover(tests_dir, pattern='test_*.py')
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    
    print(f"\n{'='*60}")
    print("TEST SUMMARY")
    print('='*60)
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    
    return 0 if result.wasSuccessful() else 1


if __name__ == "__main__":
    sys.exit(main())
