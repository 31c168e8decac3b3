"""
Root conftest.py for project-wide pytest configuration.

Registers the ``integration`` marker for tests that train real estimators or
drive full rollouts, and the option that leaves them out.
"""
import pytest


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: test exercising real estimators or complete rollouts")


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--skip-integration",
        action="store_true",
        default=False,
        help="skip tests marked as integration"
    )


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item]
) -> None:
    """Skip integration tests when --skip-integration is given."""
    if not config.getoption("--skip-integration"):
        return
    skip_integration = pytest.mark.skip(reason="--skip-integration was given")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
