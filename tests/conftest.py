"""
Shared fixtures for the simulation tests.
"""

import pytest

from config import CONFIG_ENV_VAR, ConfigLoader
from scene import Particle, SceneModel
from generators import thermal_box


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the configuration at an empty temporary file for every test."""
    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "config.json"))
    ConfigLoader.reset_instance()
    yield tmp_path / "config.json"
    ConfigLoader.reset_instance()


@pytest.fixture
def head_on_scene():
    """Two equal disks flying towards each other along the x axis."""
    return SceneModel.from_particles([
        Particle(position=(-1.0, 0.0), velocity=(1.0, 0.0), mass=1.0, radius=0.1),
        Particle(position=(1.0, 0.0), velocity=(-1.0, 0.0), mass=1.0, radius=0.1),
    ])


@pytest.fixture
def box_walls():
    """Elastic unit box."""
    return thermal_box(1.0, 1.0)
