"""Exception types raised by the gas simulation core."""

from __future__ import annotations


class GasSimError(Exception):
    """Base class for every error raised by the simulation core."""


class SceneValidationError(GasSimError, ValueError):
    """A scene handed to the core violates its basic invariants.

    Raised synchronously at engine construction and on reset.  The
    message names the offending particle or wall index.
    """


class SchedulerStoppedError(GasSimError, RuntimeError):
    """A command was issued to a scheduler that has already stopped."""


class SimulationFailedError(GasSimError, RuntimeError):
    """The background simulation actor died with an unexpected error."""


class ChannelClosed(GasSimError):
    """The frame channel is closed and every pending frame was consumed."""
