"""
Environment contracts — what the learner needs from a live game connection.

Provides Snapshot (one immutable sensed instant), Action (the closed set of
commands the agent may issue) and the abstract Environment / WorldResetter
capabilities a game client must implement. The game-protocol client itself
lives outside this package; see survival_ai.sim for an in-process world.
"""

import abc
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Awaitable, Callable, Optional, Tuple


class Action(IntEnum):
    """Agent commands, in tie-break order (first listed wins)."""
    FORWARD = 0
    BACK = 1
    LEFT = 2
    RIGHT = 3
    JUMP = 4
    INTERACT = 5

    @property
    def key(self) -> str:
        """Stable name used in persisted tables."""
        return self.name.lower()

    @classmethod
    def from_key(cls, key: str) -> 'Action':
        return cls[key.upper()]


ACTIONS: Tuple[Action, ...] = tuple(Action)
NUM_ACTIONS = len(ACTIONS)


@dataclass(frozen=True)
class EntityInfo:
    """One nearby entity as seen by the agent."""
    kind: str
    distance: float
    hostile: bool = False


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable read of the sensed environment at one instant.

    Entities are expected nearest-first but the encoder does not rely on it.
    Block names are whatever the game reports ('air', 'stone', 'lava', ...)
    or None when nothing is loaded there.
    """
    health: float
    food: float
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    max_health: float = 20.0
    max_food: float = 20.0

    # Movement
    on_ground: bool = True
    collided_horizontally: bool = False
    collided_vertically: bool = False

    # Surroundings
    entities: Tuple[EntityInfo, ...] = field(default_factory=tuple)
    block_below: Optional[str] = None
    block_ahead: Optional[str] = None

    # Environmental flags
    in_liquid: bool = False
    on_fire: bool = False
    raining: bool = False
    daytime: bool = True

    @property
    def is_dead(self) -> bool:
        return self.health <= 0

    def nearest_entity(self) -> Optional[EntityInfo]:
        if not self.entities:
            return None
        return min(self.entities, key=lambda e: e.distance)


@dataclass
class ActionOutcome:
    """Result of a dispatched action. Failures here are never fatal."""
    action: Action
    success: bool = True
    detail: str = ''


class EnvironmentListener(abc.ABC):
    """Receives lifecycle events from a connected environment."""

    @abc.abstractmethod
    async def on_spawn(self):
        ...

    @abc.abstractmethod
    async def on_death(self):
        ...

    @abc.abstractmethod
    async def on_disconnect(self, reason: str = ''):
        ...

    @abc.abstractmethod
    async def on_kick(self, reason: str = ''):
        ...

    @abc.abstractmethod
    async def on_error(self, err: BaseException):
        ...


class Environment(abc.ABC):
    """
    A live, connected game session for one agent.

    sense() must be cheap and always answer while connected. act() may take
    several ticks of wall time and may fail; callers treat a failure as a
    lost step, not as a crash.
    """

    @abc.abstractmethod
    def sense(self) -> Snapshot:
        ...

    @abc.abstractmethod
    async def act(self, action: Action) -> ActionOutcome:
        ...

    @abc.abstractmethod
    async def close(self):
        ...


class WorldResetter(abc.ABC):
    """External capability that puts the world back to a fresh state."""

    @abc.abstractmethod
    async def request_reset(self, agent_id: str):
        ...


# async connector(agent_id, listener) -> Environment
Connector = Callable[[str, EnvironmentListener], Awaitable[Environment]]
