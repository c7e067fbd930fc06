"""
Simulation of a 2D gas of colliding disks inside walls of arbitrary shape.

This module defines ``SimulationEngine``, which advances a ``SceneModel``
in fixed time steps.  Each step integrates free flight under gravity,
detects every contact active within the step and resolves contacts
iteratively, re-detecting after each pass until none remain or the
iteration bound is hit.  Particle pairs collide elastically.  Walls
without a temperature reflect specularly.  Walls with a temperature
thermalise particles according to their temperature and an
accommodation coefficient (see ``collisions.reflect_with_accommodation``).

Every step produces an immutable ``SimulationFrame``: a copy of the
particle state with the frame number, simulated time and statistics.
Frames can be handed to other threads freely; the engine itself is meant
to be driven by a single thread.
"""

from __future__ import annotations

import dataclasses
import math
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Deque, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import structlog
from numpy import ndarray

import geometry
from collisions import CollisionDetector, CollisionResolver
from config import ConfigLoader, config_value
from integrator import Integrator
from scene import Particle, SceneModel, WallSegment

logger = structlog.get_logger(__name__)


################################################################################
# Frames
################################################################################

@dataclass(frozen=True)
class SimulationWarnings:
    """Cumulative counters of recoverable problems met while stepping."""

    non_finite_velocities: int = 0
    non_finite_positions: int = 0
    wall_escapes: int = 0
    iteration_exhaustions: int = 0

    @property
    def total(self) -> int:
        return (
            self.non_finite_velocities
            + self.non_finite_positions
            + self.wall_escapes
            + self.iteration_exhaustions
        )

    def bumped(self, counter: str, count: int = 1) -> "SimulationWarnings":
        return dataclasses.replace(self, **{counter: getattr(self, counter) + count})


def _empty_mapping() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class FrameStatistics:
    """Aggregate quantities of one frame.

    ``wall_hits`` and ``wall_heat`` are keyed by wall index and cover the
    step that produced the frame; ``wall_heat`` is the kinetic energy the
    thermal walls delivered to the gas (negative when the gas cooled).
    The mappings are read-only views over private copies.
    """

    num_particles: int
    total_kinetic_energy: float
    mean_kinetic_energy: float
    temperature: float
    momentum: Tuple[float, float]
    species_counts: Mapping[str, int] = field(default_factory=_empty_mapping)
    wall_hits: Mapping[int, int] = field(default_factory=_empty_mapping)
    wall_heat: Mapping[int, float] = field(default_factory=_empty_mapping)
    contacts_resolved: int = 0
    iterations: int = 0

    @classmethod
    def build(
        cls,
        scene: SceneModel,
        k_boltz: float,
        wall_hits: Optional[Dict[int, int]] = None,
        wall_heat: Optional[Dict[int, float]] = None,
        contacts_resolved: int = 0,
        iterations: int = 0,
    ) -> "FrameStatistics":
        energies = scene.kinetic_energies()
        n = scene.n_particles
        total = float(energies.sum())
        mean = total / n if n else 0.0
        momentum = scene.total_momentum()
        species = Counter(s for s in scene.species if s is not None)
        return cls(
            num_particles=n,
            total_kinetic_energy=total,
            mean_kinetic_energy=mean,
            # Two degrees of freedom: <E_k> = kB T
            temperature=mean / k_boltz,
            momentum=(float(momentum[0]), float(momentum[1])),
            species_counts=MappingProxyType(dict(species)),
            wall_hits=MappingProxyType(dict(wall_hits or {})),
            wall_heat=MappingProxyType(dict(wall_heat or {})),
            contacts_resolved=contacts_resolved,
            iterations=iterations,
        )


def _frozen(array: ndarray) -> ndarray:
    copy = np.array(array, dtype=float, copy=True)
    copy.setflags(write=False)
    return copy


@dataclass(frozen=True, eq=False)
class SimulationFrame:
    """Immutable snapshot of the scene after one step.

    Array fields are read-only copies: positions and velocities have
    shape ``(2, N)``, masses and radii shape ``(N,)``.
    """

    frame_number: int
    time: float
    epoch: int
    positions: ndarray
    velocities: ndarray
    masses: ndarray
    radii: ndarray
    species: Tuple[Optional[str], ...]
    walls: Tuple[WallSegment, ...]
    gravity: Tuple[float, float]
    statistics: FrameStatistics
    warnings: SimulationWarnings

    @property
    def n_particles(self) -> int:
        return int(self.masses.shape[0])

    def particle(self, index: int) -> Particle:
        return Particle(
            position=(float(self.positions[0, index]), float(self.positions[1, index])),
            velocity=(float(self.velocities[0, index]), float(self.velocities[1, index])),
            mass=float(self.masses[index]),
            radius=float(self.radii[index]),
            species=self.species[index],
        )

    def particles(self) -> List[Particle]:
        return [self.particle(i) for i in range(self.n_particles)]

    def to_scene(self) -> SceneModel:
        """A fresh mutable scene holding this frame's state."""
        return SceneModel(
            positions=self.positions,
            velocities=self.velocities,
            masses=self.masses,
            radii=self.radii,
            walls=self.walls,
            gravity=self.gravity,
            species=self.species,
        )


################################################################################
# Engine
################################################################################

class EngineState(str, Enum):
    IDLE = "idle"
    STEPPING = "stepping"


class SimulationEngine:
    """Evolve a gas of disks inside a chamber of wall segments.

    The engine owns its ``SceneModel`` exclusively: the scene passed in is
    validated and copied.  Runs are deterministic for an identical scene,
    time step and ``seed``.
    """

    def __init__(
        self,
        scene: SceneModel,
        dt: Optional[float] = None,
        seed: Optional[int] = None,
        *,
        accommodation: Optional[float] = None,
        k_boltz: Optional[float] = None,
        max_iterations: Optional[int] = None,
        integrator: Optional[Integrator] = None,
        detector: Optional[CollisionDetector] = None,
        resolver: Optional[CollisionResolver] = None,
    ):
        """Create an engine for ``scene``.

        Parameters
        ----------
        scene: SceneModel
            Initial state.  Raises ``SceneValidationError`` when invalid.
        dt: float, optional
            Time step; defaults to the configured ``time_step``.
        seed: int, optional
            Seed of the random generator used by thermal walls.
        accommodation, k_boltz: float, optional
            Thermal wall parameters; default to configuration values.
        max_iterations: int, optional
            Bound on detect/resolve passes per step.
        integrator, detector, resolver: optional
            Replacement components, e.g. a detector backed by a spatial
            index.
        """
        self._k_boltz: float = float(config_value(k_boltz, "kB"))
        self._base_dt: float = self._check_dt(config_value(dt, "time_step"))
        self.max_iterations: int = int(config_value(max_iterations, "max_resolution_iterations"))

        self.integrator = integrator if integrator is not None else Integrator()
        self.detector = detector if detector is not None else CollisionDetector()
        self.resolver = (
            resolver
            if resolver is not None
            else CollisionResolver(accommodation=accommodation, k_boltz=self._k_boltz, seed=seed)
        )

        self.warnings = SimulationWarnings()
        self._state = EngineState.IDLE
        self._frame_no: int = 0
        self._epoch: int = 0
        self._elapsed_time: float = 0.0
        self._kinetic_energy: Deque[float] = deque(maxlen=int(ConfigLoader()["energy_history"]))
        self._last_wall_hits: Dict[int, int] = {}
        self._scene: SceneModel = self._adopt(scene)
        self._kinetic_energy.append(self.calc_kinetic_energy())

        logger.info(
            "Simulation engine created",
            particles=self._scene.n_particles,
            walls=self._scene.n_walls,
            dt=self._base_dt,
        )

    # -------------------------------------------------------------------------
    @staticmethod
    def _check_dt(dt: float) -> float:
        dt = float(dt)
        if not math.isfinite(dt) or dt <= 0.0:
            raise ValueError(f"Time step must be positive and finite, got {dt!r}")
        return dt

    @staticmethod
    def _adopt(scene: SceneModel) -> SceneModel:
        scene.validate()
        owned = scene.copy()
        owned.begin_step()
        return owned

    def reset(self, scene: SceneModel, seed: Optional[int] = None) -> SimulationFrame:
        """Replace the scene and restart simulated time.

        Frame numbers keep increasing across resets; ``epoch`` counts the
        resets.  Returns the initial frame of the new scene.
        """
        if self._state is EngineState.STEPPING:
            raise RuntimeError("Cannot reset while a step is in progress")
        owned = self._adopt(scene)
        self._scene = owned
        if seed is not None:
            self.resolver.rng = np.random.default_rng(seed)
        self._epoch += 1
        self._frame_no += 1
        self._elapsed_time = 0.0
        self._kinetic_energy.clear()
        self._kinetic_energy.append(self.calc_kinetic_energy())
        self._last_wall_hits = {}
        self.resolver.take_wall_counters()
        logger.info("Simulation reset", epoch=self._epoch, particles=owned.n_particles, walls=owned.n_walls)
        return self.snapshot()

    # -------------------------------------------------------------------------
    # Properties to expose the state
    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def dt(self) -> float:
        return self._base_dt

    def set_time_step(self, dt: float) -> None:
        self._base_dt = self._check_dt(dt)

    @property
    def frame_number(self) -> int:
        return self._frame_no

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def k_boltz(self) -> float:
        return self._k_boltz

    @property
    def r(self) -> ndarray:
        """Return positions of the particles as a 2×N array (read-only view)."""
        view = self._scene.r.view()
        view.setflags(write=False)
        return view

    @property
    def v(self) -> ndarray:
        """Return velocities of the particles as a 2×N array (read-only view)."""
        view = self._scene.v.view()
        view.setflags(write=False)
        return view

    def scene_copy(self) -> SceneModel:
        return self._scene.copy()

    def get_elapsed_time(self) -> float:
        """Return the total elapsed simulation time since the last reset."""
        return self._elapsed_time

    def get_last_wall_hits(self) -> Dict[int, int]:
        """Return the number of hits per wall index during the last step."""
        return dict(self._last_wall_hits)

    # -------------------------------------------------------------------------
    # Thermodynamic properties
    @property
    def T(self) -> float:
        """Instantaneous kinetic temperature ``mean(m |v|^2) / (2 kB)``."""
        return self.calc_kinetic_energy() / self._k_boltz

    def calc_kinetic_energy(self) -> float:
        """Calculate mean kinetic energy of the particles."""
        if not self._scene.n_particles:
            return 0.0
        return float(np.mean(self._scene.kinetic_energies()))

    def calc_full_kinetic_energy(self) -> float:
        """Calculate total kinetic energy of the particles."""
        return float(np.sum(self._scene.kinetic_energies()))

    def expected_kinetic_energy(self, T: float) -> float:
        """Mean kinetic energy per particle at temperature ``T`` (k_B T)."""
        return self._k_boltz * T

    def mean_kinetic_energy(self, frames_c: Union[int, None] = None) -> float:
        """Return the mean of the stored kinetic energy history."""
        if not self._kinetic_energy:
            return 0.0
        if frames_c is None:
            return float(np.mean(self._kinetic_energy))
        recent = list(self._kinetic_energy)[-frames_c:]
        return float(np.mean(recent))

    # -------------------------------------------------------------------------
    def __iter__(self) -> "SimulationEngine":
        return self

    def __next__(self) -> SimulationFrame:
        return self.step()

    def run(self, steps: int, dt: Optional[float] = None) -> List[SimulationFrame]:
        """Advance ``steps`` times and return the produced frames."""
        return [self.step(dt) for _ in range(steps)]

    def step(self, dt: Optional[float] = None) -> SimulationFrame:
        """Advance the system by one time step of length ``dt``.

        Integrate, detect, then resolve contacts in order of time of
        contact, re-testing each one against the current state before
        resolving it.  A particle resolved at a swept contact continues
        from that contact for the rest of the step.
        Detection repeats until no contact remains or ``max_iterations``
        passes were made; exhausting the bound is reported and the step
        completes with the current state.
        """
        if self._state is EngineState.STEPPING:
            raise RuntimeError("step() called while a step is in progress")
        dt = self._base_dt if dt is None else self._check_dt(dt)
        self._state = EngineState.STEPPING
        try:
            scene = self._scene
            self.integrator.advance(scene, dt)

            resolved = 0
            iterations = 0
            contacts = self.detector.find(scene, dt)
            while contacts:
                if iterations >= self.max_iterations:
                    self.warnings = self.warnings.bumped("iteration_exhaustions")
                    logger.warning(
                        "Resolution iterations exhausted",
                        frame=self._frame_no + 1,
                        iterations=iterations,
                        contacts=[c.describe() for c in contacts],
                    )
                    break
                for contact in contacts:
                    current = self.detector.retest(scene, contact, dt)
                    if current is None:
                        continue
                    self.resolver.resolve(scene, current, dt)
                    resolved += 1
                iterations += 1
                contacts = self.detector.find(scene, dt)

            self._repair_state(scene)

            self._elapsed_time += dt
            self._frame_no += 1
            wall_hits, wall_heat = self.resolver.take_wall_counters()
            self._last_wall_hits = wall_hits
            self._kinetic_energy.append(self.calc_kinetic_energy())
            return self._make_frame(wall_hits, wall_heat, resolved, iterations)
        finally:
            self._state = EngineState.IDLE

    # -------------------------------------------------------------------------
    def _repair_state(self, scene: SceneModel) -> None:
        """Correct non-finite values and particles that escaped through a wall."""
        bad_v = np.flatnonzero(~np.isfinite(scene.v).all(axis=0))
        if bad_v.size:
            scene.v[:, bad_v] = 0.0
            self.warnings = self.warnings.bumped("non_finite_velocities", int(bad_v.size))
            logger.warning("Non-finite velocities zeroed", frame=self._frame_no + 1, particles=bad_v.tolist())

        bad_r = np.flatnonzero(~np.isfinite(scene.r).all(axis=0))
        if bad_r.size:
            scene.r[:, bad_r] = scene.r_start[:, bad_r]
            self.warnings = self.warnings.bumped("non_finite_positions", int(bad_r.size))
            logger.warning("Non-finite positions restored", frame=self._frame_no + 1, particles=bad_r.tolist())

        repaired = set()
        for i, w in self.detector.find_wall_crossings(scene):
            if i in repaired:
                continue
            repaired.add(i)
            wall = scene.walls[w]
            a = np.asarray(wall.start, dtype=float)
            n_left = geometry.perp(wall.direction)
            side = 1.0 if geometry.dot(scene.r_start[:, i] - a, n_left) >= 0.0 else -1.0
            normal = n_left * side
            scene.r[:, i] = scene.r_start[:, i]
            v_n = float(geometry.dot(scene.v[:, i], normal))
            if v_n < 0.0:
                scene.v[:, i] -= 2.0 * v_n * normal
            self.warnings = self.warnings.bumped("wall_escapes")
            logger.warning("Particle escaped through wall", frame=self._frame_no + 1, particle=i, wall=w)

    def snapshot(self) -> SimulationFrame:
        """Frame of the current state without advancing."""
        return self._make_frame({}, {}, 0, 0)

    def _make_frame(
        self,
        wall_hits: Dict[int, int],
        wall_heat: Dict[int, float],
        resolved: int,
        iterations: int,
    ) -> SimulationFrame:
        scene = self._scene
        return SimulationFrame(
            frame_number=self._frame_no,
            time=self._elapsed_time,
            epoch=self._epoch,
            positions=_frozen(scene.r),
            velocities=_frozen(scene.v),
            masses=_frozen(scene.m),
            radii=_frozen(scene.radius),
            species=scene.species,
            walls=scene.walls,
            gravity=(float(scene.gravity[0]), float(scene.gravity[1])),
            statistics=FrameStatistics.build(
                scene, self._k_boltz, wall_hits, wall_heat, resolved, iterations
            ),
            warnings=self.warnings,
        )
