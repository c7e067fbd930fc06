"""
Configuration loader for the gas simulation.

Values are read from a JSON file (``config.json`` in the working
directory, or the file named by the ``GASSIM_CONFIG`` environment
variable) and merged over the built-in defaults below.  Components read
their defaults through ``ConfigLoader()[key]``; explicit constructor
arguments always take precedence over configured values.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "GASSIM_CONFIG"

DEFAULTS: Dict[str, Any] = {
    # Base integration step in simulation time units.
    "time_step": 6.0e-4,
    # Boltzmann constant in simulation units.  Mean kinetic energy per
    # particle is kB * T for the two translational degrees of freedom.
    "kB": 1.0,
    # Thermal wall accommodation: 1 is fully diffuse, 0 purely specular.
    "accommodation": 1.0,
    # Outgoing speed clamp at thermal walls, in thermal speeds sqrt(kB T / m).
    "thermal_speed_limit": 8.0,
    "max_resolution_iterations": 16,
    "overlap_tolerance": 1.0e-9,
    "frame_buffer_size": 256,
    "energy_history": 5000,
}


class ConfigLoader:
    """Process-wide access to configuration values.

    ``ConfigLoader()`` always returns the same instance.  Pass ``path`` to
    point the loader at a different file; this reloads the values.
    """

    _instance: Optional["ConfigLoader"] = None

    def __new__(cls, path: Optional[os.PathLike] = None) -> "ConfigLoader":
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._path = _resolve_path(path)
            instance._values = dict(DEFAULTS)
            instance.reload()
            cls._instance = instance
        elif path is not None:
            cls._instance._path = Path(path)
            cls._instance.reload()
        return cls._instance

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def reload(self) -> None:
        """Re-read the backing file, falling back to defaults for missing keys."""
        values = dict(DEFAULTS)
        if self._path is not None and self._path.exists():
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
            if not isinstance(data, dict):
                raise ValueError(f"Configuration file {self._path} must hold a JSON object")
            values.update(data)
            logger.debug("Configuration loaded", path=str(self._path), keys=sorted(data))
        self._values = values

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Update a value and persist it when a file backs the loader."""
        self._values[key] = value
        if self._path is None:
            return
        stored: Dict[str, Any] = {}
        if self._path.exists():
            with self._path.open("r", encoding="utf-8") as fh:
                stored = json.load(fh)
        stored[key] = value
        with self._path.open("w", encoding="utf-8") as fh:
            json.dump(stored, fh, indent=2)

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the shared instance so the next call reloads from scratch."""
        cls._instance = None


def _resolve_path(path: Optional[os.PathLike]) -> Optional[Path]:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.json"


def config_value(explicit: Any, key: str) -> Any:
    """Return ``explicit`` unless it is ``None``, else the configured value."""
    if explicit is not None:
        return explicit
    return ConfigLoader()[key]
