"""
State Encoder — Quantizes a Snapshot into a canonical, hashable state key.

Same role as the chess situation key: similar situations must land on the
same row of the value table, otherwise the agent never sees a state twice
and nothing is learned. The encoder is pure and keeps no history.

Key layout (fields joined by '|'):

    h=<health bucket>   0 = dead, 1..N alive
    f=<food bucket>     0..M-1
    g, c, v             on ground, horizontal / vertical collision
    b, a                block category below / ahead
    l, x, r, d          in liquid, on fire, raining, daytime
    e=<K slots>         kind:distance-bucket:h|p, or '-' when empty

Raw coordinates never appear in a key.
"""

import math
import re
from typing import Dict, List, Optional, Tuple

from survival_ai.config import EncoderConfig
from survival_ai.environment import Snapshot, EntityInfo
from survival_ai.errors import MalformedSnapshotError


StateKey = str

EMPTY_SLOT = '-'

AIR_BLOCKS = frozenset({'air', 'cave_air', 'void_air'})
LIQUID_BLOCKS = frozenset({'water', 'bubble_column', 'flowing_water'})
HAZARD_BLOCKS = frozenset({
    'lava', 'flowing_lava', 'fire', 'soul_fire', 'magma_block', 'cactus',
    'sweet_berry_bush', 'campfire', 'soul_campfire', 'powder_snow',
})

_UNSAFE_CHARS = re.compile(r'[|,:=\s]+')


def normalize(value: float, maximum: float) -> float:
    """Scale into [0, 1] against a positive maximum."""
    if maximum <= 0:
        return 0.0
    return min(max(value / maximum, 0.0), 1.0)


def block_category(name: Optional[str]) -> str:
    """Fold a block name into air / liquid / hazard / solid / none."""
    if name is None:
        return 'none'
    name = name.lower()
    if name.startswith('minecraft:'):
        name = name[len('minecraft:'):]
    if name in AIR_BLOCKS:
        return 'air'
    if name in HAZARD_BLOCKS:
        return 'hazard'
    if name in LIQUID_BLOCKS:
        return 'liquid'
    return 'solid'


def _flag(value: bool) -> str:
    return '1' if value else '0'


class SurvivalStateEncoder:
    """
    Encodes a Snapshot as a StateKey.

    Controlled information loss: continuous vitals and distances are
    bucketed, block names are folded into categories and the entity list
    is reduced to a fixed number of canonically ordered slots.
    """

    def __init__(self, config: EncoderConfig = None):
        self.config = config or EncoderConfig()
        self.config.validate()

    # ── Buckets ──────────────────────────────────────────────────────

    def health_bucket(self, health: float, max_health: float) -> int:
        if health <= 0:
            return 0
        n = self.config.health_buckets
        return 1 + min(n - 1, int(normalize(health, max_health) * n))

    def food_bucket(self, food: float, max_food: float) -> int:
        n = self.config.food_buckets
        return min(n - 1, int(normalize(food, max_food) * n))

    def distance_bucket(self, distance: float) -> int:
        distance = max(distance, 0.0)
        for i, edge in enumerate(self.config.distance_edges):
            if distance <= edge:
                return i
        return len(self.config.distance_edges)

    # ── Entities ─────────────────────────────────────────────────────

    def entity_slots(self, entities) -> List[str]:
        """
        Encode entities into exactly K slots.

        Slots are sorted by (distance bucket, hostile first, kind) before
        truncation, so the result does not depend on the input order.
        """
        encoded: List[Tuple[int, int, str]] = []
        for entity in entities:
            kind = _UNSAFE_CHARS.sub('_', str(entity.kind).strip().lower()) or 'unknown'
            encoded.append((self.distance_bucket(entity.distance),
                            0 if entity.hostile else 1,
                            kind))
        encoded.sort()

        k = self.config.entity_slots
        slots = [f"{kind}:{bucket}:{'h' if hostile == 0 else 'p'}"
                 for bucket, hostile, kind in encoded[:k]]
        slots.extend([EMPTY_SLOT] * (k - len(slots)))
        return slots

    # ── Encoding ─────────────────────────────────────────────────────

    def validate(self, snapshot: Snapshot):
        """Raise MalformedSnapshotError on anything encode() cannot trust."""
        try:
            vitals = (float(snapshot.health), float(snapshot.food),
                      float(snapshot.max_health), float(snapshot.max_food))
        except (AttributeError, TypeError, ValueError) as e:
            raise MalformedSnapshotError(f"unreadable vitals: {e}") from e
        if not all(math.isfinite(v) for v in vitals):
            raise MalformedSnapshotError(f"non-finite vitals: {vitals}")
        if snapshot.max_health <= 0 or snapshot.max_food <= 0:
            raise MalformedSnapshotError(
                f"max health/food must be positive: {vitals[2:]}")
        for entity in snapshot.entities:
            if not isinstance(entity, EntityInfo):
                raise MalformedSnapshotError(f"not an EntityInfo: {entity!r}")
            if not math.isfinite(entity.distance):
                raise MalformedSnapshotError(
                    f"non-finite distance for {entity.kind}")

    def encode(self, snapshot: Snapshot) -> StateKey:
        self.validate(snapshot)

        fields = [
            f"h={self.health_bucket(snapshot.health, snapshot.max_health)}",
            f"f={self.food_bucket(snapshot.food, snapshot.max_food)}",
            f"g={_flag(snapshot.on_ground)}",
            f"c={_flag(snapshot.collided_horizontally)}",
            f"v={_flag(snapshot.collided_vertically)}",
            f"b={block_category(snapshot.block_below)}",
            f"a={block_category(snapshot.block_ahead)}",
            f"l={_flag(snapshot.in_liquid)}",
            f"x={_flag(snapshot.on_fire)}",
            f"r={_flag(snapshot.raining)}",
            f"d={_flag(snapshot.daytime)}",
            "e=" + ','.join(self.entity_slots(snapshot.entities)),
        ]
        return '|'.join(fields)

    @staticmethod
    def describe(key: StateKey) -> Dict[str, object]:
        """Parse a key back into named fields (for status output)."""
        names = {
            'h': 'health_bucket', 'f': 'food_bucket', 'g': 'on_ground',
            'c': 'collided_horizontally', 'v': 'collided_vertically',
            'b': 'block_below', 'a': 'block_ahead', 'l': 'in_liquid',
            'x': 'on_fire', 'r': 'raining', 'd': 'daytime', 'e': 'entities',
        }
        out: Dict[str, object] = {}
        for token in key.split('|'):
            short, _, value = token.partition('=')
            name = names.get(short, short)
            if short in ('h', 'f'):
                out[name] = int(value)
            elif short in ('b', 'a'):
                out[name] = value
            elif short == 'e':
                slots = []
                for slot in value.split(',') if value else []:
                    if slot == EMPTY_SLOT:
                        slots.append(None)
                    else:
                        kind, bucket, hostility = slot.split(':')
                        slots.append((kind, int(bucket), hostility == 'h'))
                out[name] = slots
            else:
                out[name] = value == '1'
        return out
