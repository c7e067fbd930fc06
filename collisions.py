"""
Collision detection and resolution for particles and wall segments.

Detection is a naive all-pairs scan: every unordered particle pair and
every particle/wall combination is tested once per pass, so a pass costs
O(P^2 + P*W).  The candidate filter is vectorised over index arrays;
each candidate is then confirmed by the scalar ``test_pair`` /
``test_wall`` which build the ``Contact`` values.  A spatial index would
replace ``find`` without changing its signature.

A contact is active during the current step when the two shapes overlap
at the end of the step, or when the straight path from the step-start
position (``scene.r_start``) to the current position brings them into
touch while they approach each other.  Swept contacts carry the time of
contact and are resolved by rewinding to that moment.

Particle pairs bounce elastically.  Walls without a temperature reflect
specularly.  Walls with a temperature thermalise the outgoing velocity
with the Maxwell diffuse-reflection model blended with the specular one
through an accommodation coefficient.
"""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog
from numpy import ndarray

import geometry
from config import config_value
from scene import SceneModel, WallSegment

logger = structlog.get_logger(__name__)


################################################################################
# Thermal wall utility functions
################################################################################

def thermal_speed(T: float, mass: float, k_boltz: float) -> float:
    """Standard deviation of one velocity component at temperature ``T``."""
    return math.sqrt(max(k_boltz * T, 0.0) / mass)


def sample_velocity_from_wall(
    T: float, mass: float, rng: np.random.Generator, k_boltz: float
) -> Tuple[float, float]:
    """Sample normal and tangential velocity components for diffusive reflection.

    Parameters
    ----------
    T: float
        Temperature of the wall.
    mass: float
        Mass of the reflected particle.
    rng: numpy.random.Generator
        Source of randomness; the engine seeds it for reproducible runs.
    k_boltz: float
        Boltzmann constant in simulation units.

    Returns
    -------
    v_n: float
        Normal (outgoing, non-negative) velocity component.
    v_t: float
        Tangential velocity component.

    Notes
    -----
    Molecules leaving a wall in a 2D gas follow the Maxwell flux
    distribution: the normal component is Rayleigh distributed with scale
    ``sqrt(kT/m)`` and the tangential component is Gaussian ``N(0, kT/m)``.
    """
    sigma = thermal_speed(T, mass, k_boltz)
    v_n = float(rng.rayleigh(scale=sigma))
    v_t = float(rng.normal(0.0, sigma))
    return v_n, v_t


def reflect_with_accommodation(
    v_n: float,
    v_t: float,
    T_wall: float,
    accommodation: float,
    mass: float,
    rng: np.random.Generator,
    k_boltz: float,
    speed_limit: float,
) -> Tuple[float, float]:
    """Outgoing velocity components after hitting a thermal wall.

    ``v_n`` is the incoming speed towards the wall (positive) and ``v_t``
    the tangential component.  Both outgoing components are blended
    between the specular reflection and a thermal sample drawn at the
    wall temperature::

        v_n_out = (1 - a) * v_n + a * v_n_thermal
        v_t_out = (1 - a) * v_t + a * v_t_thermal

    The outgoing speed is clamped to ``max(speed_limit * sigma, |v_in|)``
    so the wall never launches a particle faster than either bound.

    Returns
    -------
    (v_n_out, v_t_out)
        ``v_n_out`` is the non-negative speed away from the wall.
    """
    a = float(np.clip(accommodation, 0.0, 1.0))
    if a == 0.0:
        return abs(v_n), v_t

    v_n_new, v_t_new = sample_velocity_from_wall(T_wall, mass, rng, k_boltz)
    v_n_out = abs((1.0 - a) * abs(v_n) + a * v_n_new)
    v_t_out = (1.0 - a) * v_t + a * v_t_new

    cap = max(speed_limit * thermal_speed(T_wall, mass, k_boltz), math.hypot(v_n, v_t))
    speed = math.hypot(v_n_out, v_t_out)
    if speed > cap > 0.0:
        scale = cap / speed
        v_n_out *= scale
        v_t_out *= scale
    return v_n_out, v_t_out


################################################################################
# Contacts
################################################################################

class ContactKind(str, Enum):
    """What the particle touches."""

    PARTICLE = "particle"
    WALL = "wall"


@dataclass(frozen=True)
class Contact:
    """One collision detected within the current step.

    Attributes
    ----------
    kind: ContactKind
    particle: int
        Index of the first particle.
    other: int
        Index of the second particle or of the wall, depending on ``kind``.
    normal: tuple of float
        Unit contact normal pointing from ``other`` towards ``particle``.
    depth: float
        Penetration at the end of the step (0 for a swept touch).
    time: float or None
        Time of contact measured from the start of the step, or ``None``
        when the shapes were already overlapping.
    """

    kind: ContactKind
    particle: int
    other: int
    normal: Tuple[float, float]
    depth: float
    time: Optional[float] = None

    @property
    def key(self) -> Tuple[str, int, int]:
        return self.kind.value, self.particle, self.other

    def involves(self, index: int) -> bool:
        if self.particle == index:
            return True
        return self.kind is ContactKind.PARTICLE and self.other == index

    def describe(self) -> str:
        if self.kind is ContactKind.PARTICLE:
            return f"particle {self.particle} <-> particle {self.other}"
        return f"particle {self.particle} <-> wall {self.other}"


def _vec(value: ndarray) -> Tuple[float, float]:
    return float(value[0]), float(value[1])


################################################################################
# Detection
################################################################################

class CollisionDetector:
    """All-pairs contact finder.

    Parameters
    ----------
    tolerance: float, optional
        Overlap depth below which shapes count as merely touching.
    """

    def __init__(self, tolerance: Optional[float] = None):
        self.tolerance: float = float(config_value(tolerance, "overlap_tolerance"))
        self._pairs_cnt: int = -1
        self._particles_ids_pairs: ndarray = np.zeros((0, 2), dtype=int)

    # -------------------------------------------------------------------------
    def find(self, scene: SceneModel, dt: float) -> List[Contact]:
        """Return every contact active in the step of length ``dt``.

        Contacts are ordered by time of contact, with overlaps found at
        the end of the step last.  Ties keep particle pairs in index order
        first, then particle/wall contacts ordered by particle then wall.
        """
        contacts = self.find_particle_contacts(scene, dt)
        contacts.extend(self.find_wall_contacts(scene, dt))
        contacts.sort(key=lambda c: dt if c.time is None else c.time)
        if contacts:
            logger.debug("Contacts detected", count=len(contacts))
        return contacts

    def retest(self, scene: SceneModel, contact: Contact, dt: float) -> Optional[Contact]:
        """Re-evaluate a previously found contact against the current state."""
        if contact.kind is ContactKind.PARTICLE:
            return self.test_pair(scene, contact.particle, contact.other, dt)
        return self.test_wall(scene, contact.particle, contact.other, dt)

    # -------------------------------------------------------------------------
    def _ids_pairs(self, n: int) -> ndarray:
        """Index pairs of all unordered particle pairs, cached per particle count."""
        if n != self._pairs_cnt:
            pairs = list(itertools.combinations(range(n), 2))
            self._particles_ids_pairs = np.asarray(pairs, dtype=int).reshape(-1, 2)
            self._pairs_cnt = n
        return self._particles_ids_pairs

    def find_particle_contacts(self, scene: SceneModel, dt: float) -> List[Contact]:
        ids_pairs = self._ids_pairs(scene.n_particles)
        if not ids_pairs.size:
            return []
        idx_i = ids_pairs[:, 0]
        idx_j = ids_pairs[:, 1]

        # Relative position once both particles are past their last contact
        # and relative chord travelled from there; keep pairs whose closest
        # approach on the chord falls below the sum of radii.
        t0 = np.maximum(scene.t_start[idx_i], scene.t_start[idx_j])
        c0 = scene.positions_at(t0, dt, idx_i) - scene.positions_at(t0, dt, idx_j)
        c1 = scene.r[:, idx_i] - scene.r[:, idx_j]
        u = c1 - c0
        uu = geometry.dot(u, u)
        moving = uu > geometry.DISTANCE_EPS
        tau = np.where(moving, -geometry.dot(c0, u) / np.where(moving, uu, 1.0), 1.0)
        tau = np.clip(tau, 0.0, 1.0)
        closest = c0 + u * tau
        reach = scene.radius[idx_i] + scene.radius[idx_j]
        candidates = np.flatnonzero(geometry.dot(closest, closest) < reach * reach)

        contacts = []
        for k in candidates:
            contact = self.test_pair(scene, int(idx_i[k]), int(idx_j[k]), dt)
            if contact is not None:
                contacts.append(contact)
        return contacts

    def find_wall_contacts(self, scene: SceneModel, dt: float) -> List[Contact]:
        if not scene.n_walls or not scene.n_particles:
            return []
        starts, ends = scene.wall_arrays()
        a = starts[:, None, :]
        edge = ends[:, None, :] - a
        length = geometry.norm(edge)
        e_hat = edge / length
        n_left = geometry.perp(e_hat)

        p0 = scene.r_start[:, :, None] - a
        p1 = scene.r[:, :, None] - a
        d0 = geometry.dot(p0, n_left)
        d1 = geometry.dot(p1, n_left)
        s0 = geometry.dot(p0, e_hat)
        s1 = geometry.dot(p1, e_hat)
        radius = scene.radius[:, None]

        near_line = (np.abs(d1) < radius) | (d0 * d1 <= 0.0)
        in_span = (np.minimum(s0, s1) <= length + radius) & (np.maximum(s0, s1) >= -radius)
        candidates = np.argwhere(near_line & in_span)

        contacts = []
        for i, w in candidates:
            contact = self.test_wall(scene, int(i), int(w), dt)
            if contact is not None:
                contacts.append(contact)
        return contacts

    # -------------------------------------------------------------------------
    def test_pair(self, scene: SceneModel, i: int, j: int, dt: float) -> Optional[Contact]:
        """Contact between particles ``i`` and ``j`` in this step, if any."""
        reach = float(scene.radius[i] + scene.radius[j])
        t0 = float(max(scene.t_start[i], scene.t_start[j]))
        c0 = scene.positions_at(t0, dt, i) - scene.positions_at(t0, dt, j)
        c1 = scene.r[:, i] - scene.r[:, j]
        depth = reach - float(geometry.norm(c1))

        if float(geometry.norm(c0)) >= reach and t0 < dt:
            f = geometry.time_of_impact(c0, c1 - c0, reach)
            if f is not None and 0.0 <= f <= 1.0:
                normal = geometry.normalized(c0 + (c1 - c0) * f)
                dv = scene.v[:, i] - scene.v[:, j]
                if geometry.dot(dv, normal) < 0.0:
                    time = t0 + f * (dt - t0)
                    return Contact(ContactKind.PARTICLE, i, j, _vec(normal), max(depth, 0.0), time)

        if depth > self.tolerance:
            return Contact(ContactKind.PARTICLE, i, j, _vec(geometry.normalized(c1)), depth)
        return None

    def test_wall(self, scene: SceneModel, i: int, w: int, dt: float) -> Optional[Contact]:
        """Contact between particle ``i`` and wall ``w`` in this step, if any."""
        wall = scene.walls[w]
        a = np.asarray(wall.start, dtype=float)
        b = np.asarray(wall.end, dtype=float)
        radius = float(scene.radius[i])
        start = scene.r_start[:, i]
        t_start = float(scene.t_start[i])
        end = scene.r[:, i]

        edge = b - a
        length = float(geometry.norm(edge))
        e_hat = edge / length
        n_left = geometry.perp(e_hat)
        d0 = float(geometry.dot(start - a, n_left))
        d1 = float(geometry.dot(end - a, n_left))
        # Walls are two-sided: the normal faces the side the step started on.
        side = 1.0 if d0 >= 0.0 else -1.0
        normal = n_left * side
        h0 = d0 * side
        h1 = d1 * side

        if h0 >= radius > h1 and geometry.dot(scene.v[:, i], normal) < 0.0:
            f = (h0 - radius) / (h0 - h1)
            touch = start + (end - start) * f
            s = float(geometry.dot(touch - a, e_hat))
            if 0.0 <= s <= length:
                time = t_start + f * (dt - t_start)
                return Contact(ContactKind.WALL, i, w, _vec(normal), radius - h1, time)

        if h1 < 0.0 and bool(geometry.segments_intersect(start, end, a, b)):
            return Contact(ContactKind.WALL, i, w, _vec(normal), radius - h1)

        overlap = geometry.circle_segment_overlap(end, radius, a, b)
        if overlap is None:
            return None
        contact_normal, depth = overlap
        if depth <= self.tolerance:
            return None
        return Contact(ContactKind.WALL, i, w, _vec(contact_normal), depth)

    # -------------------------------------------------------------------------
    def find_wall_crossings(self, scene: SceneModel) -> List[Tuple[int, int]]:
        """(particle, wall) pairs whose centre path in this step crosses the wall."""
        if not scene.n_walls or not scene.n_particles:
            return []
        starts, ends = scene.wall_arrays()
        crossed = geometry.segments_intersect(
            scene.r_start[:, :, None],
            scene.r[:, :, None],
            starts[:, None, :],
            ends[:, None, :],
        )
        return [(int(i), int(w)) for i, w in np.argwhere(crossed)]


################################################################################
# Resolution
################################################################################

class CollisionResolver:
    """Computes post-collision velocities and positions.

    Parameters
    ----------
    accommodation: float, optional
        Default accommodation coefficient of thermal walls.
    k_boltz: float, optional
        Boltzmann constant in simulation units.
    speed_limit: float, optional
        Thermal-wall outgoing speed clamp, in thermal speeds.
    rng: numpy.random.Generator, optional
        Random source for thermal exchange.  Created from ``seed`` when
        omitted.
    seed: int, optional
    """

    def __init__(
        self,
        accommodation: Optional[float] = None,
        k_boltz: Optional[float] = None,
        speed_limit: Optional[float] = None,
        rng: Optional[np.random.Generator] = None,
        seed: Optional[int] = None,
    ):
        self.accommodation: float = float(np.clip(config_value(accommodation, "accommodation"), 0.0, 1.0))
        self.k_boltz: float = float(config_value(k_boltz, "kB"))
        self.speed_limit: float = float(config_value(speed_limit, "thermal_speed_limit"))
        self.rng: np.random.Generator = rng if rng is not None else np.random.default_rng(seed)
        self.wall_hits: Dict[int, int] = {}
        self.wall_heat: Dict[int, float] = {}

    def take_wall_counters(self) -> Tuple[Dict[int, int], Dict[int, float]]:
        """Return and clear the wall hit counts and heat delivered since the last call."""
        hits, heat = self.wall_hits, self.wall_heat
        self.wall_hits, self.wall_heat = {}, {}
        return hits, heat

    # -------------------------------------------------------------------------
    def resolve(self, scene: SceneModel, contact: Contact, dt: float) -> None:
        if contact.kind is ContactKind.PARTICLE:
            self.resolve_particle_pair(scene, contact, dt)
        else:
            self.resolve_particle_wall(scene, contact, dt)

    @staticmethod
    def compute_new_v(
        v1: ndarray, v2: ndarray, m1: float, m2: float, normal: ndarray
    ) -> Tuple[ndarray, ndarray]:
        """Post-collision velocities for an elastic collision along ``normal``.

        Conserves momentum and kinetic energy for any pair of masses.
        """
        impulse = 2.0 * m1 * m2 / (m1 + m2) * geometry.dot(v1 - v2, normal)
        v1new = v1 - (impulse / m1) * normal
        v2new = v2 + (impulse / m2) * normal
        return v1new, v2new

    def resolve_particle_pair(self, scene: SceneModel, contact: Contact, dt: float) -> None:
        i, j = contact.particle, contact.other
        normal = np.asarray(contact.normal, dtype=float)

        if contact.time is not None:
            # Rewind both particles to the moment of touch along their paths.
            p_i = scene.positions_at(contact.time, dt, i)
            p_j = scene.positions_at(contact.time, dt, j)
            normal = geometry.normalized(p_i - p_j, fallback=normal)

        v_i = scene.v[:, i].copy()
        v_j = scene.v[:, j].copy()
        if geometry.dot(v_i - v_j, normal) < 0.0:
            scene.v[:, i], scene.v[:, j] = self.compute_new_v(
                v_i, v_j, float(scene.m[i]), float(scene.m[j]), normal
            )

        if contact.time is not None:
            remaining = dt - contact.time
            scene.r[:, i] = p_i + scene.v[:, i] * remaining
            scene.r[:, j] = p_j + scene.v[:, j] * remaining
            scene.move_step_start(i, p_i, contact.time)
            scene.move_step_start(j, p_j, contact.time)

        self._separate_pair(scene, i, j, normal)

    @staticmethod
    def _separate_pair(scene: SceneModel, i: int, j: int, normal: ndarray) -> None:
        """Push an overlapping pair apart, split in proportion to inverse mass."""
        delta = scene.r[:, i] - scene.r[:, j]
        dist = float(geometry.norm(delta))
        overlap = float(scene.radius[i] + scene.radius[j]) - dist
        if overlap <= 0.0:
            return
        n = geometry.normalized(delta, fallback=normal)
        inv_i = 1.0 / float(scene.m[i])
        inv_j = 1.0 / float(scene.m[j])
        share_i = inv_i / (inv_i + inv_j)
        scene.r[:, i] += n * overlap * share_i
        scene.r[:, j] -= n * overlap * (1.0 - share_i)

    # -------------------------------------------------------------------------
    def resolve_particle_wall(self, scene: SceneModel, contact: Contact, dt: float) -> None:
        i, w = contact.particle, contact.other
        wall = scene.walls[w]
        normal = np.asarray(contact.normal, dtype=float)

        if contact.time is not None:
            touch = scene.positions_at(contact.time, dt, i)

        velocity = scene.v[:, i].copy()
        v_n = float(geometry.dot(velocity, normal))
        if v_n < 0.0:
            if wall.is_thermal:
                new_velocity = self._thermal_reflection(velocity, normal, wall, float(scene.m[i]))
                heat = 0.5 * float(scene.m[i]) * (
                    float(geometry.dot(new_velocity, new_velocity)) - float(geometry.dot(velocity, velocity))
                )
                self.wall_heat[w] = self.wall_heat.get(w, 0.0) + heat
            else:
                new_velocity = velocity - 2.0 * v_n * normal
            scene.v[:, i] = new_velocity
            self.wall_hits[w] = self.wall_hits.get(w, 0) + 1

        if contact.time is not None:
            scene.r[:, i] = touch + scene.v[:, i] * (dt - contact.time)
            scene.move_step_start(i, touch, contact.time)

        self._push_out_of_wall(scene, i, wall, normal)

    def _thermal_reflection(self, velocity: ndarray, normal: ndarray, wall: WallSegment, mass: float) -> ndarray:
        tangent = geometry.perp(normal)
        accommodation = self.accommodation if wall.accommodation is None else wall.accommodation
        v_n_out, v_t_out = reflect_with_accommodation(
            -float(geometry.dot(velocity, normal)),
            float(geometry.dot(velocity, tangent)),
            float(wall.temperature),
            accommodation,
            mass,
            self.rng,
            self.k_boltz,
            self.speed_limit,
        )
        return normal * v_n_out + tangent * v_t_out

    @staticmethod
    def _push_out_of_wall(scene: SceneModel, i: int, wall: WallSegment, normal: ndarray) -> None:
        """Place particle ``i`` at one radius from the wall on the contact side."""
        a = np.asarray(wall.start, dtype=float)
        b = np.asarray(wall.end, dtype=float)
        radius = float(scene.radius[i])
        centre = scene.r[:, i]
        closest = geometry.closest_point_on_segment(centre, a, b)
        delta = centre - closest
        if geometry.dot(delta, normal) <= 0.0:
            scene.r[:, i] = closest + normal * radius
            return
        dist = float(geometry.norm(delta))
        if dist < radius:
            scene.r[:, i] = closest + delta / dist * radius
