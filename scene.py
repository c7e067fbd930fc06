"""
Scene model: particles, wall segments and gravity.

``Particle`` and ``WallSegment`` are small immutable records used to
describe a scene and to read one back.  ``SceneModel`` stores the live
particle state in contiguous arrays (positions and velocities as
``2 x N`` arrays, masses and radii as length ``N`` arrays) which the
integrator and the collision code mutate in place.  Only the simulation
actor ever holds a mutable ``SceneModel``; everything handed to other
threads is a copy.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from numpy import ndarray

import geometry
from errors import SceneValidationError

Vector = Tuple[float, float]


@dataclass(frozen=True)
class Particle:
    """A disk taking part in collisions.

    Attributes
    ----------
    position, velocity: tuple of float
        Centre and velocity in simulation units.
    mass, radius: float
        Both strictly positive.
    species: str, optional
        Tag used to tell substances apart in diffusion experiments.
    """

    position: Vector
    velocity: Vector
    mass: float
    radius: float
    species: Optional[str] = None

    @property
    def kinetic_energy(self) -> float:
        vx, vy = self.velocity
        return 0.5 * self.mass * (vx * vx + vy * vy)

    def kinetic_temperature(self, k_boltz: float) -> float:
        """Temperature equivalent of this particle's kinetic energy (2 dof)."""
        return self.kinetic_energy / k_boltz


@dataclass(frozen=True)
class WallSegment:
    """An immutable straight piece of the chamber boundary.

    A wall without ``temperature`` reflects particles elastically.  A
    wall with a temperature exchanges heat with particles that touch it;
    ``accommodation`` overrides the engine-wide coefficient for this wall.
    """

    start: Vector
    end: Vector
    temperature: Optional[float] = None
    accommodation: Optional[float] = None

    @property
    def is_thermal(self) -> bool:
        return self.temperature is not None

    @property
    def length(self) -> float:
        return math.hypot(self.end[0] - self.start[0], self.end[1] - self.start[1])

    @property
    def direction(self) -> ndarray:
        return geometry.normalized(np.subtract(self.end, self.start, dtype=float))

    @property
    def normal(self) -> ndarray:
        """Right-hand unit normal; outward for a counter-clockwise chamber."""
        return -geometry.perp(self.direction)


class SceneModel:
    """Aggregate of particles, walls and gravity.

    Parameters
    ----------
    positions, velocities: array_like, shape (2, N)
    masses, radii: array_like, shape (N,)
    walls: sequence of WallSegment
    gravity: 2-vector
        Constant acceleration applied to every particle.
    species: sequence of str or None, optional
    """

    def __init__(
        self,
        positions: ndarray,
        velocities: ndarray,
        masses: ndarray,
        radii: ndarray,
        walls: Sequence[WallSegment] = (),
        gravity: Sequence[float] = (0.0, 0.0),
        species: Optional[Sequence[Optional[str]]] = None,
    ):
        self.r: ndarray = np.array(positions, dtype=float).reshape(2, -1)
        self.v: ndarray = np.array(velocities, dtype=float).reshape(2, -1)
        self.m: ndarray = np.array(masses, dtype=float).reshape(-1)
        self.radius: ndarray = np.array(radii, dtype=float).reshape(-1)
        self.walls: Tuple[WallSegment, ...] = tuple(walls)
        self.gravity: ndarray = np.array(gravity, dtype=float).reshape(2)
        if species is None:
            species = (None,) * self.m.shape[0]
        self.species: Tuple[Optional[str], ...] = tuple(species)
        # Sub-step state of the step being computed: particle i was at
        # r_start[:, i] at time t_start[i] into the step and moves in a
        # straight line to r[:, i] at the end of the step.  The integrator
        # resets both; resolving a swept contact moves them to the contact.
        self.r_start: ndarray = self.r.copy()
        self.t_start: ndarray = np.zeros(self.m.shape[0])
        self._wall_arrays: Optional[Tuple[ndarray, ndarray]] = None

    # -------------------------------------------------------------------------
    @classmethod
    def from_particles(
        cls,
        particles: Iterable[Particle],
        walls: Sequence[WallSegment] = (),
        gravity: Sequence[float] = (0.0, 0.0),
    ) -> "SceneModel":
        particles = list(particles)
        if particles:
            positions = np.array([p.position for p in particles], dtype=float).T
            velocities = np.array([p.velocity for p in particles], dtype=float).T
        else:
            positions = np.zeros((2, 0))
            velocities = np.zeros((2, 0))
        return cls(
            positions=positions,
            velocities=velocities,
            masses=[p.mass for p in particles],
            radii=[p.radius for p in particles],
            walls=walls,
            gravity=gravity,
            species=[p.species for p in particles],
        )

    def copy(self) -> "SceneModel":
        """Deep copy of the particle state; walls are immutable and shared."""
        clone = SceneModel(
            positions=self.r,
            velocities=self.v,
            masses=self.m,
            radii=self.radius,
            walls=self.walls,
            gravity=self.gravity,
            species=self.species,
        )
        clone.r_start = self.r_start.copy()
        clone.t_start = self.t_start.copy()
        return clone

    def begin_step(self) -> None:
        """Start a new step at the current positions."""
        self.r_start = self.r.copy()
        self.t_start = np.zeros(self.n_particles)

    def positions_at(self, t, dt: float, index=slice(None)) -> ndarray:
        """Positions at time ``t`` into a step of length ``dt``.

        Interpolates along each particle's remaining path, from
        ``r_start`` at ``t_start`` to ``r`` at ``dt``.
        """
        ts = self.t_start[index]
        span = dt - ts
        frac = np.where(span > 0.0, (t - ts) / np.where(span > 0.0, span, 1.0), 1.0)
        start = self.r_start[:, index]
        return start + (self.r[:, index] - start) * frac

    def move_step_start(self, index: int, position: ndarray, t: float) -> None:
        """Record that particle ``index`` was at ``position`` at time ``t`` into the step."""
        self.r_start[:, index] = position
        self.t_start[index] = t

    # -------------------------------------------------------------------------
    @property
    def n_particles(self) -> int:
        return int(self.m.shape[0])

    @property
    def n_walls(self) -> int:
        return len(self.walls)

    def particle(self, index: int) -> Particle:
        return Particle(
            position=(float(self.r[0, index]), float(self.r[1, index])),
            velocity=(float(self.v[0, index]), float(self.v[1, index])),
            mass=float(self.m[index]),
            radius=float(self.radius[index]),
            species=self.species[index],
        )

    def particles(self) -> List[Particle]:
        return [self.particle(i) for i in range(self.n_particles)]

    def wall_arrays(self) -> Tuple[ndarray, ndarray]:
        """Wall start and end points as two ``2 x W`` arrays."""
        if self._wall_arrays is None:
            if self.walls:
                starts = np.array([w.start for w in self.walls], dtype=float).T
                ends = np.array([w.end for w in self.walls], dtype=float).T
            else:
                starts = np.zeros((2, 0))
                ends = np.zeros((2, 0))
            self._wall_arrays = (starts, ends)
        return self._wall_arrays

    # -------------------------------------------------------------------------
    def kinetic_energies(self) -> ndarray:
        return 0.5 * self.m * (self.v[0] ** 2 + self.v[1] ** 2)

    def total_momentum(self) -> ndarray:
        return (self.v * self.m).sum(axis=1)

    # -------------------------------------------------------------------------
    def validate(self) -> None:
        """Raise ``SceneValidationError`` if the scene cannot be simulated.

        Scenes normally come from an external loader that already rejects
        malformed definitions; this is a last line of defence.
        """
        n = self.n_particles
        if self.r.shape != (2, n) or self.v.shape != (2, n) or self.radius.shape != (n,):
            raise SceneValidationError(
                f"Inconsistent particle arrays: positions {self.r.shape}, velocities "
                f"{self.v.shape}, masses {self.m.shape}, radii {self.radius.shape}"
            )
        if len(self.species) != n:
            raise SceneValidationError(f"Expected {n} species tags, got {len(self.species)}")
        if not np.all(np.isfinite(self.gravity)):
            raise SceneValidationError(f"Gravity must be finite, got {self.gravity.tolist()}")

        bad = np.flatnonzero(~(np.isfinite(self.r).all(axis=0) & np.isfinite(self.v).all(axis=0)))
        if bad.size:
            raise SceneValidationError(f"Particle {int(bad[0])} has a non-finite position or velocity")
        bad = np.flatnonzero(~(np.isfinite(self.m) & (self.m > 0.0)))
        if bad.size:
            raise SceneValidationError(f"Particle {int(bad[0])} must have a positive mass")
        bad = np.flatnonzero(~(np.isfinite(self.radius) & (self.radius > 0.0)))
        if bad.size:
            raise SceneValidationError(f"Particle {int(bad[0])} must have a positive radius")

        for idx, wall in enumerate(self.walls):
            points = (*wall.start, *wall.end)
            if not all(math.isfinite(c) for c in points):
                raise SceneValidationError(f"Wall {idx} has non-finite endpoints")
            if wall.length <= geometry.DISTANCE_EPS:
                raise SceneValidationError(f"Wall {idx} is degenerate (zero length)")
            if wall.temperature is not None and not (
                math.isfinite(wall.temperature) and wall.temperature >= 0.0
            ):
                raise SceneValidationError(f"Wall {idx} temperature must be finite and >= 0")
            if wall.accommodation is not None and not 0.0 <= wall.accommodation <= 1.0:
                raise SceneValidationError(f"Wall {idx} accommodation must lie in [0, 1]")

    def __repr__(self) -> str:
        return (
            f"SceneModel(n_particles={self.n_particles}, n_walls={self.n_walls}, "
            f"gravity={self.gravity.tolist()})"
        )
