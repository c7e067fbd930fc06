"""Free-flight time integration between collisions."""

from __future__ import annotations

import numpy as np

from scene import SceneModel


class Integrator:
    """Explicit fixed-step integrator under constant gravity.

    Each call first starts a new step on the scene (collision detection
    sweeps from ``scene.r_start``), then applies ``v += g * dt`` followed
    by ``r += v * dt`` to every particle.
    """

    def advance(self, scene: SceneModel, dt: float) -> None:
        scene.begin_step()
        if np.any(scene.gravity):
            scene.v += scene.gravity[:, None] * dt
        scene.r += scene.v * dt
