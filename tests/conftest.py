"""
Pytest configuration and shared fixtures for Kiln tests.
"""
import pytest
import sys
from pathlib import Path

# Add the plugin to Python path
plugin_path = Path(__file__).parent.parent / 'rplugin' / 'python3'
sys.path.insert(0, str(plugin_path))


@pytest.fixture(scope="session")
def plugin_dir():
    """Path to the plugin directory."""
    return Path(__file__).parent.parent


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "requires_jupyter: mark test as requiring a Jupyter kernel installation"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add skip markers based on dependencies."""
    for item in items:
        if item.get_closest_marker('requires_jupyter'):
            try:
                import ipykernel  # noqa: F401
            except ImportError:
                item.add_marker(pytest.mark.skip(reason="ipykernel not available"))


def pytest_report_header(config):
    """Add information about available dependencies to test report header."""
    deps = []

    try:
        import pynvim
        deps.append(f"pynvim-{pynvim.__version__}")
    except ImportError:
        deps.append("pynvim-MISSING")

    try:
        import aiohttp
        deps.append(f"aiohttp-{aiohttp.__version__}")
    except ImportError:
        deps.append("aiohttp-MISSING")

    try:
        import jupyter_client
        deps.append(f"jupyter_client-{jupyter_client.__version__}")
    except ImportError:
        deps.append("jupyter_client-MISSING")

    return f"dependencies: {', '.join(deps)}"
