"""
Pytest configuration for crossbin test suite.

Integration tests are skipped unless the --full flag is given.
"""

import pytest


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--full",
        action="store_true",
        default=False,
        help="Run full test suite including integration tests (slow)",
    )


def pytest_configure(config):
    """Register the integration marker."""
    config.addinivalue_line(
        "markers", "integration: end-to-end pipeline tests (run with --full)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --full was given."""
    if config.getoption("--full"):
        return
    skip_integration = pytest.mark.skip(reason="integration test, use --full to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
