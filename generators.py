"""
Helpers to build initial scenes: regular particle grids, Maxwell
velocities, random non-overlapping gases inside a polygon and the
classic box with two thermal walls.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

import numpy as np
import structlog
from numpy import ndarray
from scipy import stats

import geometry
from config import config_value
from errors import SceneValidationError
from scene import Particle, SceneModel, WallSegment

logger = structlog.get_logger(__name__)

VelocityField = Callable[[ndarray], Sequence[float]]


def constant_velocity(velocity: Sequence[float]) -> VelocityField:
    """Velocity field returning the same ``velocity`` everywhere."""
    v = tuple(float(c) for c in velocity)
    return lambda _position: v


def generate_grid(
    origin: Sequence[float],
    primary_axis: Sequence[float],
    size_primary: float,
    size_secondary: float,
    num_primary: int,
    num_secondary: int,
    velocity: VelocityField,
    mass: float = 1.0,
    radius: float = 0.01,
    species: Optional[str] = None,
) -> List[Particle]:
    """Particles on the nodes of a (possibly rotated) rectangular grid.

    The grid spans ``size_primary`` along ``primary_axis`` and
    ``size_secondary`` along the axis rotated 90 degrees counter-clockwise
    from it, with ``num_primary x num_secondary`` cells, hence
    ``(num_primary + 1) * (num_secondary + 1)`` particles.  Rows run along
    the primary axis.

    Parameters
    ----------
    origin: 2-vector
        Position of the first node.
    primary_axis: 2-vector
        Direction of the rows; normalised here.
    velocity: callable
        Maps a node position to the particle's initial velocity.
    """
    if size_primary <= 0.0 or size_secondary <= 0.0:
        raise ValueError("Grid sizes must be positive")
    if num_primary <= 0 or num_secondary <= 0:
        return []

    origin = geometry.as_vector(origin)
    axis = geometry.as_vector(primary_axis)
    if float(geometry.norm(axis)) <= geometry.DISTANCE_EPS:
        raise ValueError("Primary axis must be non-zero")
    axis = geometry.normalized(axis)
    secondary = geometry.perp(axis)
    step_primary = size_primary / num_primary
    step_secondary = size_secondary / num_secondary

    particles = []
    for i in range(num_secondary + 1):
        for j in range(num_primary + 1):
            pos = origin + axis * (j * step_primary) + secondary * (i * step_secondary)
            vx, vy = velocity(pos)
            particles.append(
                Particle(
                    position=(float(pos[0]), float(pos[1])),
                    velocity=(float(vx), float(vy)),
                    mass=mass,
                    radius=radius,
                    species=species,
                )
            )
    return particles


def maxwell_velocities(
    T: float,
    masses: ndarray,
    rng: Optional[np.random.Generator] = None,
    k_boltz: Optional[float] = None,
) -> ndarray:
    """Draw 2D Maxwell-Boltzmann velocities at temperature ``T``.

    Each component is normal with ``sigma = sqrt(kB * T / m)``.  Returns a
    ``2 x N`` array.
    """
    k_boltz = float(config_value(k_boltz, "kB"))
    masses = np.asarray(masses, dtype=float).reshape(-1)
    if T < 0.0:
        raise ValueError(f"Temperature must be non-negative, got {T!r}")
    if masses.size == 0 or T == 0.0:
        return np.zeros((2, masses.size))
    sigma = np.sqrt(k_boltz * T / masses)
    return stats.norm.rvs(loc=0.0, scale=sigma, size=(2, masses.size), random_state=rng)


def random_gas(
    polygon: geometry.Polygon,
    count: int,
    radius: float,
    mass: float,
    T: float,
    rng: Optional[np.random.Generator] = None,
    species: Optional[str] = None,
    k_boltz: Optional[float] = None,
    existing: Sequence[Particle] = (),
    max_attempts: int = 1000,
) -> List[Particle]:
    """Place ``count`` non-overlapping disks uniformly inside ``polygon``.

    Candidate centres are drawn uniformly in the polygon's bounding box and
    rejected when the disk would cross an edge or overlap a disk placed
    earlier (including ``existing`` ones).  Velocities are Maxwellian at
    temperature ``T``.

    Raises
    ------
    SceneValidationError
        When a particle cannot be placed within ``max_attempts`` draws.
    """
    rng = rng if rng is not None else np.random.default_rng()
    lo, hi = polygon.bounds()
    edges = polygon.edges()

    centres = [geometry.as_vector(p.position) for p in existing]
    radii = [p.radius for p in existing]
    placed: List[ndarray] = []

    for n in range(count):
        for _ in range(max_attempts):
            c = rng.uniform(lo + radius, hi - radius)
            if not polygon.contains(c):
                continue
            if any(float(geometry.distance_to_segment(c, a, b)) < radius for a, b in edges):
                continue
            if any(
                float(geometry.norm(c - other)) < radius + r_other
                for other, r_other in zip(centres, radii)
            ):
                continue
            centres.append(c)
            radii.append(radius)
            placed.append(c)
            break
        else:
            raise SceneValidationError(
                f"Could not place particle {n} of {count} (radius {radius}) "
                f"after {max_attempts} attempts"
            )

    masses = np.full(count, float(mass))
    velocities = maxwell_velocities(T, masses, rng, k_boltz)
    logger.debug("Random gas generated", count=count, radius=radius, T=T)
    return [
        Particle(
            position=(float(c[0]), float(c[1])),
            velocity=(float(velocities[0, k]), float(velocities[1, k])),
            mass=float(mass),
            radius=float(radius),
            species=species,
        )
        for k, c in enumerate(placed)
    ]


def polygon_walls(
    polygon: geometry.Polygon,
    temperature: Optional[float] = None,
    accommodation: Optional[float] = None,
) -> List[WallSegment]:
    """Wall segments along every edge of ``polygon``, sharing the given thermal properties."""
    return [
        WallSegment(
            start=(float(a[0]), float(a[1])),
            end=(float(b[0]), float(b[1])),
            temperature=temperature,
            accommodation=accommodation,
        )
        for a, b in polygon.edges()
    ]


def thermal_box(
    width: float = 1.0,
    height: float = 1.0,
    T_left: Optional[float] = None,
    T_right: Optional[float] = None,
    accommodation: Optional[float] = None,
) -> List[WallSegment]:
    """Walls of a counter-clockwise rectangle ``[0, width] x [0, height]``.

    Returned in the order bottom, right, top, left.  The left and right
    walls carry ``T_left`` and ``T_right`` (``None`` keeps a wall elastic);
    top and bottom always reflect specularly.
    """
    if width <= 0.0 or height <= 0.0:
        raise ValueError("Box dimensions must be positive")
    w, h = float(width), float(height)
    return [
        WallSegment((0.0, 0.0), (w, 0.0)),
        WallSegment((w, 0.0), (w, h), temperature=T_right, accommodation=accommodation),
        WallSegment((w, h), (0.0, h)),
        WallSegment((0.0, h), (0.0, 0.0), temperature=T_left, accommodation=accommodation),
    ]


def thermal_box_scene(
    count: int,
    radius: float,
    T: float,
    width: float = 1.0,
    height: float = 1.0,
    T_left: Optional[float] = None,
    T_right: Optional[float] = None,
    mass: float = 1.0,
    accommodation: Optional[float] = None,
    gravity: Sequence[float] = (0.0, 0.0),
    seed: Optional[int] = None,
) -> SceneModel:
    """A ready-to-run scene: a random gas at ``T`` inside ``thermal_box``."""
    rng = np.random.default_rng(seed)
    box = geometry.Polygon([(0.0, 0.0), (width, 0.0), (width, height), (0.0, height)])
    particles = random_gas(box, count, radius, mass, T, rng)
    walls = thermal_box(width, height, T_left, T_right, accommodation)
    return SceneModel.from_particles(particles, walls=walls, gravity=gravity)
