"""
Planar geometry used by collision detection.

Vectors follow the array convention of the rest of the code base: a
single vector is a length-2 array and a batch of vectors is an array of
shape ``(2, ...)``.  ``dot``, ``cross``, ``norm``, ``closest_point_on_segment``,
``distance_to_segment`` and ``segments_intersect`` broadcast over such
batches; the overlap tests work on single shapes and return ``None``
when there is no intersection.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy import ndarray

# Lengths below this are treated as zero.
DISTANCE_EPS: float = 1e-12


def as_vector(value: Sequence[float]) -> ndarray:
    """Return ``value`` as a float array of shape ``(2,)``."""
    vec = np.asarray(value, dtype=float)
    if vec.shape != (2,):
        raise ValueError(f"Expected a 2-vector, got shape {vec.shape}")
    return vec


def dot(u: ndarray, v: ndarray) -> ndarray:
    return u[0] * v[0] + u[1] * v[1]


def cross(u: ndarray, v: ndarray) -> ndarray:
    """z component of the 3-D cross product of two planar vectors."""
    return u[0] * v[1] - u[1] * v[0]


def norm(u: ndarray) -> ndarray:
    return np.hypot(u[0], u[1])


def perp(u: ndarray) -> ndarray:
    """Rotate ``u`` by 90 degrees counter-clockwise."""
    return np.stack([-u[1], u[0]])


def normalized(u: ndarray, fallback: Optional[ndarray] = None) -> ndarray:
    """Unit vector along ``u``; ``fallback`` (or +x) for a zero vector."""
    length = float(norm(u))
    if length <= DISTANCE_EPS:
        return np.array([1.0, 0.0]) if fallback is None else np.asarray(fallback, dtype=float)
    return u / length


def closest_point_on_segment(p: ndarray, a: ndarray, b: ndarray) -> ndarray:
    """Closest point to ``p`` on the segment ``a``-``b`` (broadcasts)."""
    ab = b - a
    denom = dot(ab, ab)
    safe = np.where(denom > DISTANCE_EPS, denom, 1.0)
    t = np.clip(dot(p - a, ab) / safe, 0.0, 1.0)
    t = np.where(denom > DISTANCE_EPS, t, 0.0)
    return a + ab * t


def distance_to_segment(p: ndarray, a: ndarray, b: ndarray) -> ndarray:
    return norm(p - closest_point_on_segment(p, a, b))


def segments_intersect(p1: ndarray, p2: ndarray, q1: ndarray, q2: ndarray) -> ndarray:
    """True where segment ``p1``-``p2`` properly crosses ``q1``-``q2``.

    Touching at an endpoint and collinear overlap do not count as
    crossing.  Broadcasts over batches of segments.
    """
    d1 = cross(q2 - q1, p1 - q1)
    d2 = cross(q2 - q1, p2 - q1)
    d3 = cross(p2 - p1, q1 - p1)
    d4 = cross(p2 - p1, q2 - p1)
    return (d1 * d2 < 0.0) & (d3 * d4 < 0.0)


def circles_overlap(
    c1: ndarray, r1: float, c2: ndarray, r2: float
) -> Optional[Tuple[ndarray, float]]:
    """Overlap test between two circles.

    Returns
    -------
    (normal, depth) or None
        ``normal`` is the unit separation direction pointing from the
        second circle towards the first; ``depth`` is the penetration
        distance.  ``None`` when the circles do not overlap.
    """
    delta = np.asarray(c1, dtype=float) - np.asarray(c2, dtype=float)
    dist = float(norm(delta))
    depth = (r1 + r2) - dist
    if depth <= 0.0:
        return None
    return normalized(delta), depth


def circle_segment_overlap(
    c: ndarray, r: float, a: ndarray, b: ndarray
) -> Optional[Tuple[ndarray, float]]:
    """Overlap test between a circle and a segment.

    Returns ``(normal, depth)`` with ``normal`` pointing from the segment
    towards the circle centre, or ``None`` without overlap.  A centre
    lying exactly on the segment gets the segment's left-hand normal.
    """
    c = np.asarray(c, dtype=float)
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    closest = closest_point_on_segment(c, a, b)
    delta = c - closest
    dist = float(norm(delta))
    depth = r - dist
    if depth <= 0.0:
        return None
    return normalized(delta, fallback=normalized(perp(b - a))), depth


def solve_quadratic(a: float, b: float, c: float) -> Optional[Tuple[float, float]]:
    """Real roots of ``a x^2 + b x + c`` in ascending order, or ``None``."""
    if abs(a) <= DISTANCE_EPS:
        if abs(b) <= DISTANCE_EPS:
            return None
        root = -c / b
        return root, root
    disc = b * b - 4.0 * a * c
    if disc < 0.0:
        return None
    sqrt_disc = math.sqrt(disc)
    # Numerically stable form avoids cancellation when b^2 >> 4ac.
    q = -0.5 * (b + math.copysign(sqrt_disc, b))
    if q == 0.0:
        return 0.0, 0.0
    x1 = q / a
    x2 = c / q
    return (x1, x2) if x1 <= x2 else (x2, x1)


def time_of_impact(offset: ndarray, motion: ndarray, contact_distance: float) -> Optional[float]:
    """First fraction ``f`` where ``|offset + motion * f| == contact_distance``.

    ``offset`` is the relative position at the start of the motion and
    ``motion`` the relative displacement over it.  Returns ``None`` when
    the shapes move apart or never reach the contact distance.  A
    negative result means the shapes already overlapped at the start.
    """
    if dot(offset, motion) >= 0.0:
        return None
    a = float(dot(motion, motion))
    b = 2.0 * float(dot(offset, motion))
    c = float(dot(offset, offset)) - contact_distance * contact_distance
    roots = solve_quadratic(a, b, c)
    if roots is None:
        return None
    return roots[0]


class Polygon:
    """Closed polygon made of points.  The last edge is implied."""

    def __init__(self, points: Sequence[Sequence[float]]):
        self.points: List[ndarray] = [as_vector(p) for p in points]

    def __len__(self) -> int:
        return len(self.points)

    def num_edges(self) -> int:
        return len(self.points)

    def edge(self, index: int) -> Tuple[ndarray, ndarray]:
        p1 = self.points[index]
        p2 = self.points[(index + 1) % len(self.points)]
        return p1, p2

    def edges(self) -> List[Tuple[ndarray, ndarray]]:
        return [self.edge(i) for i in range(self.num_edges())]

    @property
    def area(self) -> float:
        """Signed area (shoelace formula); positive for counter-clockwise."""
        total = 0.0
        for a, b in self.edges():
            total += float(cross(a, b))
        return 0.5 * total

    def bounds(self) -> Tuple[ndarray, ndarray]:
        pts = np.stack(self.points, axis=1)
        return pts.min(axis=1), pts.max(axis=1)

    def contains(self, point: Sequence[float]) -> bool:
        """Even-odd point-in-polygon test."""
        x, y = float(point[0]), float(point[1])
        inside = False
        for a, b in self.edges():
            (xa, ya), (xb, yb) = a, b
            if (ya > y) != (yb > y):
                x_cross = xa + (y - ya) * (xb - xa) / (yb - ya)
                if x < x_cross:
                    inside = not inside
        return inside
