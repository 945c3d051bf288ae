"""
Simulated World - A small deterministic survival arena.

Implements the Environment contract in-process so the whole learning loop
(connect, spawn, ticks, death, reconnect) can run without a game server.
Not a physics replica of any game: a square grid with lava pools, water,
hostile mobs that chase and bite, passive mobs, hunger and a day cycle.

Handles:
- Movement relative to a fixed facing (north), jumping, interacting
- Mob movement and melee damage
- Lava (burning) and water (in liquid)
- Hunger drain, starvation damage, regeneration when fed
- Lifecycle events (spawn, death) delivered to the listener as tasks
"""

import asyncio
import math
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

import numpy as np

from survival_ai.environment import (
    Action, ActionOutcome, EntityInfo, Environment, EnvironmentListener,
    Snapshot,
)
from survival_ai.errors import TransientConnectionError


# Cell types
GRASS = 0
LAVA = 1
WATER = 2
STONE = 3

BLOCK_NAMES = {GRASS: 'grass_block', LAVA: 'lava', WATER: 'water', STONE: 'stone'}

# Action -> (dx, dz); the agent always faces -z
MOVES = {
    Action.FORWARD: (0, -1),
    Action.BACK: (0, 1),
    Action.LEFT: (-1, 0),
    Action.RIGHT: (1, 0),
}

HOSTILE_KINDS = ('zombie', 'skeleton', 'spider')
PASSIVE_KINDS = ('cow', 'sheep', 'pig')


@dataclass
class Mob:
    kind: str
    x: int
    z: int
    hostile: bool
    health: int = 4


class SimulatedWorld:
    """
    The world state and rules, with no asyncio in it.

    All randomness comes from one seeded generator, so a world built with
    the same seed replays the same way for the same action sequence.
    """

    MAX_HEALTH = 20.0
    MAX_FOOD = 20.0

    def __init__(self, size: int = 16, seed: int = 0,
                 hostile_mobs: int = 2, passive_mobs: int = 2,
                 lava_pools: int = 3, water_pools: int = 2,
                 day_length: int = 400, sense_radius: float = 16.0):
        self.size = size
        self.rng = np.random.default_rng(seed)
        self.day_length = day_length
        self.sense_radius = sense_radius

        self.grid = np.full((size, size), GRASS, dtype=np.int8)
        self.grid[0, :] = self.grid[-1, :] = STONE
        self.grid[:, 0] = self.grid[:, -1] = STONE
        self._scatter(LAVA, lava_pools)
        self._scatter(WATER, water_pools)

        self.x, self.z = self._free_cell()
        self.y = 64.0
        self.airborne = False
        self.health = self.MAX_HEALTH
        self.food = self.MAX_FOOD
        self.tick_count = 0
        self.collided = False
        self.raining = False

        self.mobs: List[Mob] = []
        for i in range(hostile_mobs):
            self.mobs.append(Mob(HOSTILE_KINDS[i % len(HOSTILE_KINDS)],
                                 *self._free_cell(), hostile=True))
        for i in range(passive_mobs):
            self.mobs.append(Mob(PASSIVE_KINDS[i % len(PASSIVE_KINDS)],
                                 *self._free_cell(), hostile=False))

    def _scatter(self, cell: int, count: int):
        for _ in range(count):
            x, z = self.rng.integers(2, self.size - 2, size=2)
            self.grid[x, z] = cell

    def _free_cell(self) -> Tuple[int, int]:
        occupied: Set[Tuple[int, int]] = {(m.x, m.z) for m in getattr(self, 'mobs', [])}
        for _ in range(1000):
            x, z = (int(v) for v in self.rng.integers(1, self.size - 1, size=2))
            if self.grid[x, z] == GRASS and (x, z) not in occupied:
                return x, z
        return 1, 1

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def is_dead(self) -> bool:
        return self.health <= 0

    @property
    def daytime(self) -> bool:
        return (self.tick_count % self.day_length) < self.day_length // 2

    def cell(self, x: int, z: int) -> int:
        if 0 <= x < self.size and 0 <= z < self.size:
            return int(self.grid[x, z])
        return STONE

    def distance_to(self, mob: Mob) -> float:
        return math.hypot(mob.x - self.x, mob.z - self.z)

    def snapshot(self) -> Snapshot:
        under = self.cell(self.x, self.z)
        ahead = self.cell(self.x, self.z - 1)
        entities = sorted(
            (EntityInfo(m.kind, self.distance_to(m), m.hostile)
             for m in self.mobs if self.distance_to(m) <= self.sense_radius),
            key=lambda e: e.distance)
        return Snapshot(
            health=self.health,
            food=self.food,
            position=(float(self.x), self.y, float(self.z)),
            max_health=self.MAX_HEALTH,
            max_food=self.MAX_FOOD,
            on_ground=not self.airborne,
            collided_horizontally=self.collided,
            collided_vertically=False,
            entities=tuple(entities),
            block_below='air' if self.airborne else BLOCK_NAMES[under],
            block_ahead='air' if ahead == GRASS else BLOCK_NAMES[ahead],
            in_liquid=under == WATER and not self.airborne,
            on_fire=under == LAVA and not self.airborne,
            raining=self.raining,
            daytime=self.daytime,
        )

    # ── Rules ────────────────────────────────────────────────────────

    def apply(self, action: Action) -> ActionOutcome:
        """Apply one agent action, then advance the world one step."""
        if self.is_dead:
            return ActionOutcome(action, success=False, detail='dead')

        outcome = ActionOutcome(action)
        self.collided = False
        self.airborne = False
        self.y = 64.0

        if action in MOVES:
            dx, dz = MOVES[action]
            nx, nz = self.x + dx, self.z + dz
            if self.cell(nx, nz) == STONE:
                self.collided = True
                outcome = ActionOutcome(action, success=False, detail='blocked')
            else:
                self.x, self.z = nx, nz
        elif action == Action.JUMP:
            self.airborne = True
            self.y = 65.0
        elif action == Action.INTERACT:
            outcome = self._interact(action)

        self.step()
        return outcome

    def _interact(self, action: Action) -> ActionOutcome:
        target = min(self.mobs, key=self.distance_to, default=None)
        if target is not None and self.distance_to(target) <= 1.5:
            target.health -= 2
            if target.health <= 0:
                self.mobs.remove(target)
                if not target.hostile:
                    self.food = min(self.MAX_FOOD, self.food + 6.0)
            return ActionOutcome(action, detail=f'hit {target.kind}')

        ax, az = self.x, self.z - 1
        if self.cell(ax, az) == STONE and 0 < ax < self.size - 1 and 0 < az < self.size - 1:
            self.grid[ax, az] = GRASS
            return ActionOutcome(action, detail='dug stone')
        return ActionOutcome(action, success=False, detail='nothing in reach')

    def step(self):
        self.tick_count += 1
        if self.tick_count % 200 == 0:
            self.raining = bool(self.rng.random() < 0.3)

        # Mobs: hostiles chase at night or when close, passives wander
        for mob in self.mobs:
            if mob.hostile and (not self.daytime or self.distance_to(mob) < 6):
                mob.x += int(np.sign(self.x - mob.x))
                mob.z += int(np.sign(self.z - mob.z))
            elif self.tick_count % 3 == 0:
                mob.x = int(np.clip(mob.x + self.rng.integers(-1, 2), 1, self.size - 2))
                mob.z = int(np.clip(mob.z + self.rng.integers(-1, 2), 1, self.size - 2))
            if mob.hostile and not self.airborne and self.distance_to(mob) <= 1.0:
                self.health -= 2.0

        under = self.cell(self.x, self.z)
        if under == LAVA and not self.airborne:
            self.health -= 4.0

        self.food = max(0.0, self.food - 0.05)
        if self.food <= 0 and self.tick_count % 20 == 0:
            self.health -= 1.0
        elif self.food >= 18 and self.health < self.MAX_HEALTH:
            self.health = min(self.MAX_HEALTH, self.health + 0.1)

        self.health = max(0.0, self.health)


class SimulatedEnvironment(Environment):
    """
    Environment adapter around a SimulatedWorld.

    Actions take action_duration seconds of wall time, like a held key in a
    real client. Death is reported to the listener as a separate task, the
    way a game client's event would arrive.
    """

    def __init__(self, world: SimulatedWorld, listener: EnvironmentListener,
                 action_duration: float = 0.0):
        self.world = world
        self.listener = listener
        self.action_duration = action_duration
        self.closed = False
        self.actions_applied = 0
        self._events: Set[asyncio.Task] = set()
        self._death_reported = False

    def sense(self) -> Snapshot:
        if self.closed:
            raise TransientConnectionError("session closed")
        return self.world.snapshot()

    async def act(self, action: Action) -> ActionOutcome:
        if self.closed:
            raise TransientConnectionError("session closed")
        if self.action_duration > 0:
            await asyncio.sleep(self.action_duration)
        outcome = self.world.apply(action)
        self.actions_applied += 1
        if self.world.is_dead and not self._death_reported:
            self._death_reported = True
            self._fire(self.listener.on_death())
        return outcome

    def _fire(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._events.add(task)
        task.add_done_callback(self._events.discard)

    def spawn(self):
        self._fire(self.listener.on_spawn())

    async def close(self):
        self.closed = True


class SimulatedConnector:
    """
    Connector that builds a fresh world per connection.

    fail_first makes the first N attempts raise TransientConnectionError,
    for exercising backoff.
    """

    def __init__(self, size: int = 16, seed: int = 0, fail_first: int = 0,
                 action_duration: float = 0.0, **world_kwargs):
        self.size = size
        self.seed = seed
        self.fail_first = fail_first
        self.action_duration = action_duration
        self.world_kwargs = world_kwargs
        self.attempts = 0
        self.sessions: List[SimulatedEnvironment] = []

    async def __call__(self, agent_id: str,
                       listener: EnvironmentListener) -> SimulatedEnvironment:
        self.attempts += 1
        if self.attempts <= self.fail_first:
            raise TransientConnectionError(
                f"connection refused (simulated failure {self.attempts})")

        world = SimulatedWorld(size=self.size, seed=self.seed + len(self.sessions),
                               **self.world_kwargs)
        environment = SimulatedEnvironment(world, listener, self.action_duration)
        self.sessions.append(environment)
        environment.spawn()
        return environment

    @property
    def latest(self) -> Optional[SimulatedEnvironment]:
        return self.sessions[-1] if self.sessions else None
