"""
Tests for collision detection and resolution.
"""

import math

import numpy as np
import pytest

from collisions import (
    CollisionDetector,
    CollisionResolver,
    ContactKind,
    reflect_with_accommodation,
    sample_velocity_from_wall,
)
from integrator import Integrator
from scene import Particle, SceneModel, WallSegment

BOTTOM = WallSegment((0.0, 0.0), (1.0, 0.0))


def _advanced(particles, walls=(), dt=0.1):
    scene = SceneModel.from_particles(particles, walls=walls)
    Integrator().advance(scene, dt)
    return scene


class TestElasticCollision:
    """Tests for the particle-particle impulse."""

    def test_equal_masses_swap_velocities(self):
        v1, v2 = CollisionResolver.compute_new_v(
            np.array([1.0, 0.0]), np.array([-1.0, 0.0]), 1.0, 1.0, np.array([-1.0, 0.0])
        )
        assert np.allclose(v1, [-1.0, 0.0])
        assert np.allclose(v2, [1.0, 0.0])

    def test_conservation_with_unequal_masses(self):
        """Momentum and kinetic energy survive an oblique collision."""
        rng = np.random.default_rng(7)
        for _ in range(50):
            v1, v2 = rng.normal(size=2), rng.normal(size=2)
            m1, m2 = rng.uniform(0.1, 10.0, size=2)
            n = rng.normal(size=2)
            n /= np.linalg.norm(n)
            u1, u2 = CollisionResolver.compute_new_v(v1, v2, m1, m2, n)
            assert np.allclose(m1 * u1 + m2 * u2, m1 * v1 + m2 * v2)
            assert m1 * u1 @ u1 + m2 * u2 @ u2 == pytest.approx(m1 * v1 @ v1 + m2 * v2 @ v2)

    def test_tangential_component_unchanged(self):
        v1, v2 = CollisionResolver.compute_new_v(
            np.array([1.0, 2.0]), np.array([0.0, 0.0]), 1.0, 3.0, np.array([1.0, 0.0])
        )
        assert v1[1] == pytest.approx(2.0)
        assert v2[1] == pytest.approx(0.0)


class TestThermalReflection:
    """Tests for the thermal wall model."""

    def test_sample_is_outgoing(self):
        rng = np.random.default_rng(0)
        for _ in range(100):
            v_n, _ = sample_velocity_from_wall(1.0, 1.0, rng, k_boltz=1.0)
            assert v_n >= 0.0

    def test_zero_accommodation_is_specular(self):
        rng = np.random.default_rng(0)
        out = reflect_with_accommodation(2.0, 0.5, 10.0, 0.0, 1.0, rng, k_boltz=1.0, speed_limit=8.0)
        assert out == (2.0, 0.5)

    def test_full_accommodation_matches_wall_temperature(self):
        """Outgoing components follow the Maxwell flux distribution at T_wall."""
        rng = np.random.default_rng(1)
        T, mass = 2.0, 0.5
        samples = np.array([
            reflect_with_accommodation(5.0, 1.0, T, 1.0, mass, rng, k_boltz=1.0, speed_limit=8.0)
            for _ in range(20000)
        ])
        sigma2 = T / mass
        # Rayleigh second moment is 2 sigma^2
        assert np.mean(samples[:, 0] ** 2) == pytest.approx(2.0 * sigma2, rel=0.05)
        assert np.mean(samples[:, 1] ** 2) == pytest.approx(sigma2, rel=0.05)
        assert np.all(samples[:, 0] >= 0.0)

    def test_partial_accommodation_blends(self):
        """With a = 0.5 the result lies between the specular and thermal values."""
        rng = np.random.default_rng(2)
        samples = np.array([
            reflect_with_accommodation(10.0, 0.0, 0.01, 0.5, 1.0, rng, k_boltz=1.0, speed_limit=8.0)
            for _ in range(2000)
        ])
        assert np.mean(samples[:, 0]) == pytest.approx(5.0 + 0.5 * 0.1 * math.sqrt(math.pi / 2.0), abs=0.01)

    def test_outgoing_speed_is_clamped(self):
        """A very hot wall cannot launch particles beyond the clamp."""
        rng = np.random.default_rng(3)
        for _ in range(200):
            v_n, v_t = reflect_with_accommodation(0.5, 0.0, 100.0, 1.0, 1.0, rng, k_boltz=1.0, speed_limit=0.1)
            assert math.hypot(v_n, v_t) <= 1.0 + 1e-12
            assert v_n >= 0.0


class TestCollisionDetector:
    """Tests for CollisionDetector."""

    def test_swept_pair_contact(self):
        """Approaching disks that touch mid-step yield the time of contact."""
        scene = _advanced([
            Particle((-0.15, 0.0), (1.0, 0.0), 1.0, 0.1),
            Particle((0.15, 0.0), (-1.0, 0.0), 1.0, 0.1),
        ])
        contacts = CollisionDetector().find(scene, 0.1)
        assert len(contacts) == 1
        contact = contacts[0]
        assert contact.kind is ContactKind.PARTICLE
        assert (contact.particle, contact.other) == (0, 1)
        assert contact.time == pytest.approx(0.05)
        assert np.allclose(contact.normal, [-1.0, 0.0])

    def test_resting_overlap(self):
        """Already overlapping disks give a contact without a time."""
        scene = _advanced([
            Particle((0.0, 0.0), (0.0, 0.0), 1.0, 0.1),
            Particle((0.15, 0.0), (0.0, 0.0), 1.0, 0.1),
        ])
        (contact,) = CollisionDetector().find(scene, 0.1)
        assert contact.time is None
        assert contact.depth == pytest.approx(0.05)

    def test_separating_pair_without_overlap(self):
        scene = _advanced([
            Particle((-0.15, 0.0), (-1.0, 0.0), 1.0, 0.1),
            Particle((0.15, 0.0), (1.0, 0.0), 1.0, 0.1),
        ])
        assert CollisionDetector().find(scene, 0.1) == []

    def test_tolerance(self):
        """Overlap within tolerance is not a contact."""
        scene = _advanced([
            Particle((0.0, 0.0), (0.0, 0.0), 1.0, 0.1),
            Particle((0.2 - 1e-10, 0.0), (0.0, 0.0), 1.0, 0.1),
        ])
        assert CollisionDetector(tolerance=1e-9).find(scene, 0.1) == []

    def test_swept_wall_contact(self):
        scene = _advanced([Particle((0.5, 0.15), (0.0, -1.0), 1.0, 0.1)], walls=[BOTTOM])
        (contact,) = CollisionDetector().find(scene, 0.1)
        assert contact.kind is ContactKind.WALL
        assert contact.other == 0
        assert contact.time == pytest.approx(0.05)
        assert np.allclose(contact.normal, [0.0, 1.0])

    def test_wall_is_two_sided(self):
        """A particle below the wall gets a downward contact normal."""
        scene = _advanced([Particle((0.5, -0.15), (0.0, 1.0), 1.0, 0.1)], walls=[BOTTOM])
        (contact,) = CollisionDetector().find(scene, 0.1)
        assert np.allclose(contact.normal, [0.0, -1.0])

    def test_passing_beside_wall_end(self):
        scene = _advanced([Particle((1.5, 0.15), (0.0, -1.0), 1.0, 0.1)], walls=[BOTTOM])
        assert CollisionDetector().find(scene, 0.1) == []

    def test_contacts_ordered_by_time(self):
        """The contact that happens first comes first, whatever the particle order."""
        scene = _advanced([
            Particle((0.2, 0.5), (0.0, -10.0), 1.0, 0.05),
            Particle((0.6, 0.3), (0.0, -10.0), 1.0, 0.05),
        ], walls=[BOTTOM])
        contacts = CollisionDetector().find(scene, 0.1)
        assert [c.particle for c in contacts] == [1, 0]
        assert [c.time for c in contacts] == [pytest.approx(0.025), pytest.approx(0.045)]

    def test_wall_crossing(self):
        scene = _advanced([Particle((0.5, 0.1), (0.0, -2.0), 1.0, 0.01)], walls=[BOTTOM])
        assert CollisionDetector().find_wall_crossings(scene) == [(0, 0)]


class TestCollisionResolver:
    """Tests for CollisionResolver."""

    def test_swept_pair_resolution(self):
        """Disks bounce at the time of contact and fly apart for the rest of the step."""
        scene = _advanced([
            Particle((-0.15, 0.0), (1.0, 0.0), 1.0, 0.1),
            Particle((0.15, 0.0), (-1.0, 0.0), 1.0, 0.1),
        ])
        (contact,) = CollisionDetector().find(scene, 0.1)
        CollisionResolver(seed=0).resolve(scene, contact, 0.1)
        assert np.allclose(scene.v, [[-1.0, 1.0], [0.0, 0.0]])
        assert np.allclose(scene.r, [[-0.15, 0.15], [0.0, 0.0]])

    def test_overlap_split_by_inverse_mass(self):
        """The lighter disk moves further when an overlap is corrected."""
        scene = _advanced([
            Particle((0.0, 0.0), (0.0, 0.0), 1.0, 0.1),
            Particle((0.15, 0.0), (0.0, 0.0), 3.0, 0.1),
        ])
        (contact,) = CollisionDetector().find(scene, 0.1)
        CollisionResolver(seed=0).resolve(scene, contact, 0.1)
        assert scene.r[0, 1] - scene.r[0, 0] == pytest.approx(0.2)
        assert scene.r[0, 0] == pytest.approx(-0.0375)
        assert scene.r[0, 1] == pytest.approx(0.1625)

    def test_specular_wall(self):
        scene = _advanced([Particle((0.5, 0.15), (0.3, -1.0), 1.0, 0.1)], walls=[BOTTOM])
        resolver = CollisionResolver(seed=0)
        (contact,) = CollisionDetector().find(scene, 0.1)
        resolver.resolve(scene, contact, 0.1)
        assert np.allclose(scene.v[:, 0], [0.3, 1.0])
        assert scene.r[1, 0] == pytest.approx(0.15)
        hits, heat = resolver.take_wall_counters()
        assert hits == {0: 1}
        assert heat == {}
        assert resolver.take_wall_counters() == ({}, {})

    def test_thermal_wall_records_heat(self):
        wall = WallSegment((0.0, 0.0), (1.0, 0.0), temperature=5.0)
        scene = _advanced([Particle((0.5, 0.15), (0.0, -1.0), 1.0, 0.1)], walls=[wall])
        resolver = CollisionResolver(accommodation=1.0, k_boltz=1.0, seed=4)
        (contact,) = CollisionDetector().find(scene, 0.1)
        resolver.resolve(scene, contact, 0.1)
        v = scene.v[:, 0]
        assert v[1] >= 0.0
        _, heat = resolver.take_wall_counters()
        assert heat[0] == pytest.approx(0.5 * (v @ v) - 0.5)
        assert scene.r[1, 0] >= 0.1 - 1e-12

    def test_wall_accommodation_override(self):
        """A wall with zero accommodation reflects specularly despite the engine default."""
        wall = WallSegment((0.0, 0.0), (1.0, 0.0), temperature=5.0, accommodation=0.0)
        scene = _advanced([Particle((0.5, 0.15), (0.2, -1.0), 1.0, 0.1)], walls=[wall])
        resolver = CollisionResolver(accommodation=1.0, seed=4)
        (contact,) = CollisionDetector().find(scene, 0.1)
        resolver.resolve(scene, contact, 0.1)
        assert np.allclose(scene.v[:, 0], [0.2, 1.0])

    def test_fast_particle_bounces_instead_of_tunnelling(self):
        """A particle whose step jumps across the wall is reflected at the point of contact."""
        scene = _advanced([Particle((0.5, 0.5), (0.0, -100.0), 1.0, 0.01)], walls=[BOTTOM])
        resolver = CollisionResolver(seed=0)
        detector = CollisionDetector()
        for contact in detector.find(scene, 0.1):
            resolver.resolve(scene, contact, 0.1)
        assert scene.r[1, 0] == pytest.approx(0.01 + 100.0 * (0.1 - 0.0049))
        assert scene.v[1, 0] == pytest.approx(100.0)
        assert detector.find_wall_crossings(scene) == []

    def test_second_wall_hit_starts_from_the_first(self):
        """After a bounce the particle's path for the rest of the step starts at the contact point."""
        top = WallSegment((1.0, 1.0), (0.0, 1.0))
        scene = _advanced([Particle((0.5, 0.5), (0.0, -15.0), 1.0, 0.01)], walls=[BOTTOM, top])
        resolver = CollisionResolver(seed=0)
        detector = CollisionDetector()

        (first,) = detector.find(scene, 0.1)
        assert first.other == 0
        resolver.resolve(scene, first, 0.1)
        assert scene.r_start[:, 0] == pytest.approx((0.5, 0.01))
        assert scene.t_start[0] == pytest.approx(0.49 / 15.0)

        (second,) = detector.find(scene, 0.1)
        assert second.other == 1
        assert second.time == pytest.approx(0.49 / 15.0 + 0.98 / 15.0)
        resolver.resolve(scene, second, 0.1)
        assert scene.r[:, 0] == pytest.approx((0.5, 0.96))
        assert scene.v[:, 0] == pytest.approx((0.0, -15.0))
        assert detector.find(scene, 0.1) == []

    def test_reflection_law_on_tilted_wall(self):
        """Angle of incidence equals angle of reflection on a diagonal wall."""
        diagonal = WallSegment((0.0, 0.0), (2.0, 2.0))
        scene = _advanced([Particle((1.2, 0.8), (-1.0, 0.0), 1.0, 0.05)], walls=[diagonal], dt=0.35)
        (contact,) = CollisionDetector().find(scene, 0.35)
        normal = np.asarray(contact.normal)
        tangent = np.array([1.0, 1.0]) / np.sqrt(2.0)
        v_in = scene.v[:, 0].copy()
        CollisionResolver(seed=0).resolve(scene, contact, 0.35)
        v_out = scene.v[:, 0]
        assert np.allclose(v_out, [0.0, -1.0])
        assert v_out @ normal == pytest.approx(-(v_in @ normal))
        assert v_out @ tangent == pytest.approx(v_in @ tangent)
