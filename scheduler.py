"""
Background execution of a ``SimulationEngine``.

``SimulationScheduler`` runs the engine on a dedicated thread, the only
thread that ever touches the live scene.  The controlling side sends
commands (play, pause, step once, speed, reset, shutdown) through an
unbounded command queue, so no command ever blocks its caller.  Frames
travel the other way through a ``FrameChannel``: a bounded buffer that
drops its oldest frames when the consumer falls behind, so the
simulation never waits for a renderer.
"""

from __future__ import annotations

import math
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Iterator, List, Optional

import structlog

from config import config_value
from errors import ChannelClosed, SchedulerStoppedError, SimulationFailedError
from scene import SceneModel
from simulation import SimulationEngine, SimulationFrame

logger = structlog.get_logger(__name__)


################################################################################
# Frame channel
################################################################################

class FrameChannel:
    """Bounded, ordered, drop-oldest frame buffer between two threads.

    Parameters
    ----------
    capacity: int, optional
        Maximum number of undelivered frames; defaults to the configured
        ``frame_buffer_size``.
    """

    def __init__(self, capacity: Optional[int] = None):
        capacity = int(config_value(capacity, "frame_buffer_size"))
        if capacity < 1:
            raise ValueError("Channel capacity must be at least 1")
        self._frames: Deque[SimulationFrame] = deque(maxlen=capacity)
        self._cond = threading.Condition()
        self._closed = False
        self._error: Optional[BaseException] = None
        self._last_number: Optional[int] = None
        self.dropped: int = 0
        self.published: int = 0

    @property
    def capacity(self) -> int:
        return self._frames.maxlen

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)

    def publish(self, frame: SimulationFrame) -> bool:
        """Append a frame; returns ``False`` if the channel is closed.

        Frames must arrive in strictly increasing frame-number order.
        """
        with self._cond:
            if self._closed:
                return False
            if self._last_number is not None and frame.frame_number <= self._last_number:
                raise ValueError(
                    f"Frame {frame.frame_number} published after frame {self._last_number}"
                )
            if len(self._frames) == self._frames.maxlen:
                self.dropped += 1
            self._frames.append(frame)
            self._last_number = frame.frame_number
            self.published += 1
            self._cond.notify_all()
            return True

    def close(self, error: Optional[BaseException] = None) -> None:
        """Refuse further frames.  Pending frames stay readable."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._error = error
            self._cond.notify_all()

    def _raise_closed(self) -> None:
        if self._error is not None:
            raise SimulationFailedError("Simulation stopped with an error") from self._error
        raise ChannelClosed("Frame channel is closed")

    def get(self, timeout: Optional[float] = None) -> Optional[SimulationFrame]:
        """Oldest pending frame, waiting up to ``timeout`` seconds.

        Returns ``None`` on timeout.  Raises ``ChannelClosed`` (or
        ``SimulationFailedError`` after a producer failure) once the
        channel is closed and empty.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._frames or self._closed, timeout=timeout):
                return None
            if self._frames:
                return self._frames.popleft()
            self._raise_closed()

    def get_nowait(self) -> Optional[SimulationFrame]:
        with self._cond:
            if self._frames:
                return self._frames.popleft()
            if self._closed:
                self._raise_closed()
            return None

    def drain(self) -> List[SimulationFrame]:
        """All pending frames, oldest first, without blocking."""
        with self._cond:
            frames = list(self._frames)
            self._frames.clear()
            if not frames and self._closed and self._error is not None:
                self._raise_closed()
            return frames

    def latest(self) -> Optional[SimulationFrame]:
        """Newest pending frame, discarding the older ones."""
        frames = self.drain()
        return frames[-1] if frames else None

    def __iter__(self) -> Iterator[SimulationFrame]:
        """Yield frames until the channel is closed and drained."""
        while True:
            try:
                frame = self.get()
            except ChannelClosed:
                return
            if frame is not None:
                yield frame


################################################################################
# Commands
################################################################################

class SchedulerState(str, Enum):
    PLAYING = "playing"
    PAUSED = "paused"
    STEPPING_ONCE = "stepping_once"
    STOPPED = "stopped"


class CommandKind(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    STEP_ONCE = "step_once"
    SET_SPEED = "set_speed"
    RESET = "reset"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    payload: Any = None


################################################################################
# Scheduler
################################################################################

class SimulationScheduler:
    """Drives a ``SimulationEngine`` on a background thread.

    The scheduler starts Paused after publishing the initial frame.  With
    speed ``f > 0`` the simulation is paced so that simulated time
    advances ``f`` times faster than wall-clock time; with ``f == 0`` it
    steps as fast as possible.

    Parameters
    ----------
    scene: SceneModel
        Initial scene; validated synchronously.
    dt, seed:
        Forwarded to ``SimulationEngine``.
    speed: float
        Initial speed multiplier.
    capacity: int, optional
        Frame channel capacity.
    engine: SimulationEngine, optional
        Pre-built engine to drive instead of creating one from ``scene``.
    """

    def __init__(
        self,
        scene: Optional[SceneModel] = None,
        dt: Optional[float] = None,
        seed: Optional[int] = None,
        speed: float = 1.0,
        capacity: Optional[int] = None,
        engine: Optional[SimulationEngine] = None,
    ):
        if engine is None:
            if scene is None:
                raise ValueError("Either a scene or an engine is required")
            engine = SimulationEngine(scene, dt=dt, seed=seed)
        self._engine = engine
        self._speed: float = self._check_speed(speed)
        self.frames = FrameChannel(capacity)
        self._commands: "queue.Queue[Command]" = queue.Queue()
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._state = SchedulerState.PAUSED
        self._failure: Optional[BaseException] = None
        self._next_deadline: float = 0.0
        self._thread = threading.Thread(target=self._run, name="simulation", daemon=True)
        self._started = False

    # -------------------------------------------------------------------------
    @staticmethod
    def _check_speed(speed: float) -> float:
        speed = float(speed)
        if not math.isfinite(speed) or speed < 0.0:
            raise ValueError(f"Speed multiplier must be finite and >= 0, got {speed!r}")
        return speed

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SchedulerState) -> None:
        with self._state_lock:
            self._state = state

    @property
    def failure(self) -> Optional[BaseException]:
        """The exception that stopped the background thread, if any."""
        return self._failure

    @property
    def speed(self) -> float:
        return self._speed

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Control surface.  Every call enqueues a command and returns at once.
    def start(self) -> "SimulationScheduler":
        if self._started:
            raise RuntimeError("Scheduler already started")
        self._started = True
        self._thread.start()
        logger.info("Simulation scheduler started", speed=self._speed)
        return self

    def _send(self, kind: CommandKind, payload: Any = None) -> None:
        if self._stop_event.is_set() or self.state is SchedulerState.STOPPED:
            if self._failure is not None:
                raise SchedulerStoppedError("Simulation scheduler failed") from self._failure
            raise SchedulerStoppedError("Simulation scheduler is stopped")
        self._commands.put(Command(kind, payload))

    def play(self) -> None:
        self._send(CommandKind.PLAY)

    def pause(self) -> None:
        self._send(CommandKind.PAUSE)

    def step_once(self) -> None:
        self._send(CommandKind.STEP_ONCE)

    def set_speed(self, multiplier: float) -> None:
        """Set the pacing multiplier; ``0`` removes real-time pacing."""
        self._send(CommandKind.SET_SPEED, self._check_speed(multiplier))

    def reset(self, scene: SceneModel, seed: Optional[int] = None) -> None:
        """Load a new scene.  The scene is validated here, in the caller's thread."""
        scene.validate()
        self._send(CommandKind.RESET, (scene.copy(), seed))

    def shutdown(self) -> None:
        """Stop publishing at once and let the background thread finish.

        The in-flight step completes but its frame is discarded.  Safe to
        call more than once and after a failure.
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self.frames.close(self._failure)
        self._commands.put(Command(CommandKind.SHUTDOWN))
        if not self._started:
            self._set_state(SchedulerState.STOPPED)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background thread; returns ``True`` once it has ended."""
        if self._started:
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def __enter__(self) -> "SimulationScheduler":
        if not self._started:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
        self.join()

    # -------------------------------------------------------------------------
    # Background thread
    def _run(self) -> None:
        try:
            self._publish(self._engine.snapshot())
            while not self._stop_event.is_set():
                command = self._wait_for_command()
                if command is not None:
                    self._handle(command)
                    continue
                if self.state is SchedulerState.PLAYING:
                    self._advance()
        except Exception as exc:
            self._failure = exc
            logger.exception("Simulation thread failed", error=repr(exc))
            self.frames.close(exc)
        finally:
            self._set_state(SchedulerState.STOPPED)
            self.frames.close(self._failure)
            logger.info(
                "Simulation scheduler stopped",
                frame=self._engine.frame_number,
                dropped=self.frames.dropped,
            )

    def _wait_for_command(self) -> Optional[Command]:
        """Next command, idling while paused and pacing while playing."""
        if self.state is not SchedulerState.PLAYING:
            return self._commands.get()
        timeout = self._next_deadline - time.monotonic() if self._speed > 0.0 else 0.0
        try:
            if timeout <= 0.0:
                return self._commands.get_nowait()
            return self._commands.get(timeout=timeout)
        except queue.Empty:
            return None

    def _handle(self, command: Command) -> None:
        kind = command.kind
        if kind is CommandKind.SHUTDOWN:
            self._stop_event.set()
        elif kind is CommandKind.PLAY:
            if self.state is not SchedulerState.PLAYING:
                self._next_deadline = time.monotonic()
                self._set_state(SchedulerState.PLAYING)
        elif kind is CommandKind.PAUSE:
            self._set_state(SchedulerState.PAUSED)
        elif kind is CommandKind.STEP_ONCE:
            self._set_state(SchedulerState.STEPPING_ONCE)
            self._advance()
            self._set_state(SchedulerState.PAUSED)
        elif kind is CommandKind.SET_SPEED:
            self._speed = command.payload
            self._next_deadline = time.monotonic()
            logger.info("Simulation speed changed", speed=self._speed)
        elif kind is CommandKind.RESET:
            scene, seed = command.payload
            self._set_state(SchedulerState.PAUSED)
            self._publish(self._engine.reset(scene, seed=seed))
        else:
            raise ValueError(f"Unknown command {kind!r}")

    def _advance(self) -> None:
        frame = self._engine.step()
        self._publish(frame)
        if self._speed > 0.0:
            now = time.monotonic()
            self._next_deadline += self._engine.dt / self._speed
            # Do not try to catch up after falling far behind.
            if self._next_deadline < now - 0.25:
                self._next_deadline = now

    def _publish(self, frame: SimulationFrame) -> None:
        if self._stop_event.is_set():
            return
        self.frames.publish(frame)
