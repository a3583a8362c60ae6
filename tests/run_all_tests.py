#!/usr/bin/env python3
"""
Test runner for Guess Quiz Bot.
Runs the unit and integration suites and prints a summary report.
"""
import unittest
import sys
import time
from pathlib import Path

# Make the guessquiz package and the tests package importable
sys.path.insert(0, str(Path(__file__).parent.parent))

UNIT_MODULES = [
    'tests.test_content_index',
    'tests.test_choice_builder',
    'tests.test_collage',
    'tests.test_quiz_engine',
    'tests.test_session_store',
    'tests.test_dispatcher',
    'tests.test_stats',
    'tests.test_callbacks',
    'tests.test_config_manager',
    'tests.test_quiz_controller',
    'tests.test_bot_discord_integration',
    'tests.test_main',
]

CATEGORIES = {
    'unit': UNIT_MODULES,
    'integration': ['tests.test_integration_comprehensive'],
    'content': ['tests.test_content_index', 'tests.test_collage', 'tests.test_choice_builder'],
    'delivery': ['tests.test_dispatcher', 'tests.test_callbacks', 'tests.test_bot_discord_integration'],
    'controller': ['tests.test_quiz_controller', 'tests.test_session_store', 'tests.test_quiz_engine'],
    'stats': ['tests.test_stats'],
    'config': ['tests.test_config_manager', 'tests.test_main'],
}


def load_suite(module_names):
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for module_name in module_names:
        try:
            suite.addTest(loader.loadTestsFromName(module_name))
            print(f"✓ Loaded tests from {module_name}")
        except Exception as e:
            print(f"✗ Failed to load {module_name}: {e}")
    return suite


def run_test_suite(module_names):
    """Run the given test modules and print a summary report."""
    print("=" * 70)
    print("Guess Quiz Bot - Test Suite")
    print("=" * 70)

    suite = load_suite(module_names)

    print("\n" + "=" * 70)
    print("Running Tests...")
    print("=" * 70)

    runner = unittest.TextTestRunner(verbosity=2, stream=sys.stdout, buffer=True)
    start_time = time.time()
    result = runner.run(suite)
    end_time = time.time()

    total_tests = result.testsRun
    failures = len(result.failures)
    errors = len(result.errors)
    skipped = len(result.skipped)
    passed = total_tests - failures - errors - skipped

    print("\n" + "=" * 70)
    print("Test Summary Report")
    print("=" * 70)
    print(f"Total Tests Run: {total_tests}")
    print(f"Passed: {passed}")
    print(f"Failed: {failures}")
    print(f"Errors: {errors}")
    print(f"Skipped: {skipped}")
    print(f"Success Rate: {(passed/total_tests)*100:.1f}%" if total_tests > 0 else "N/A")
    print(f"Execution Time: {end_time - start_time:.2f} seconds")

    for title, problems in (("FAILURES", result.failures), ("ERRORS", result.errors)):
        if problems:
            print("\n" + "-" * 50)
            print(f"{title}:")
            print("-" * 50)
            for test, traceback in problems:
                print(f"\n{test}:")
                print(traceback)

    return failures == 0 and errors == 0


if __name__ == '__main__':
    if len(sys.argv) > 1:
        category = sys.argv[1]
        if category not in CATEGORIES:
            print(f"Unknown category: {category}")
            print(f"Available categories: {', '.join(CATEGORIES)}")
            sys.exit(1)
        success = run_test_suite(CATEGORIES[category])
    else:
        success = run_test_suite(UNIT_MODULES + CATEGORIES['integration'])

    sys.exit(0 if success else 1)
