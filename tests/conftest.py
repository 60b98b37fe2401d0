"""
pytest configuration and fixtures for the network converter tests.

Provides reusable fixtures for:
- Sample DBC / LDF / NCF descriptions (tests/data)
- Parsed and normalized networks built from them
- Hypothesis property-based testing configuration
"""

import pytest
import sys
from pathlib import Path

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

DATA_DIR = Path(__file__).parent / "data"

# Configure Hypothesis profiles
try:
    from hypothesis import settings, Verbosity, Phase

    # Default profile: balanced speed and coverage
    settings.register_profile(
        "default",
        max_examples=100,
        deadline=None,  # Disable deadline for slow interpreters
    )

    # CI profile: more thorough testing
    settings.register_profile(
        "ci",
        max_examples=500,
        deadline=None,
        suppress_health_check=[],
        phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    )

    # Dev profile: fast iteration
    settings.register_profile(
        "dev",
        max_examples=10,
        deadline=None,
    )

    # Debug profile: verbose output
    settings.register_profile(
        "debug",
        max_examples=10,
        verbosity=Verbosity.verbose,
        deadline=None,
    )

    # Load profile from environment
    import os
    profile = os.environ.get("HYPOTHESIS_PROFILE", "default")
    settings.load_profile(profile)

except ImportError:
    pass  # Hypothesis not installed


@pytest.fixture(scope="session")
def data_dir():
    return DATA_DIR


@pytest.fixture(scope="session")
def body_dbc_text():
    return (DATA_DIR / "body.dbc").read_text()


@pytest.fixture(scope="session")
def chassis_ldf_text():
    return (DATA_DIR / "chassis.ldf").read_text()


@pytest.fixture(scope="session")
def motor_ncf_text():
    return (DATA_DIR / "motor.ncf").read_text()


def _load(path):
    from pipeline import load_network
    network, diagnostics = load_network(path)
    assert network is not None, diagnostics.format(path.name)
    return network, diagnostics


@pytest.fixture(scope="session")
def body_network():
    """Normalized network from tests/data/body.dbc."""
    return _load(DATA_DIR / "body.dbc")[0]


@pytest.fixture(scope="session")
def chassis_network():
    """Normalized network from tests/data/chassis.ldf."""
    return _load(DATA_DIR / "chassis.ldf")[0]


@pytest.fixture(scope="session")
def motor_network():
    """Normalized network from tests/data/motor.ncf."""
    return _load(DATA_DIR / "motor.ncf")[0]


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
