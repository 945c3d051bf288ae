"""
Reward Function — Scores one transition (prev snapshot, action, next snapshot).

Death is the only thing that really matters: entering a snapshot with
health <= 0 always scores the fixed death penalty. Every shaping term is
clamped, and the constructor refuses a configuration where the worst
non-death reward could reach the death penalty.
"""

import math
from typing import Dict

from survival_ai.config import RewardConfig
from survival_ai.environment import Action, Snapshot
from survival_ai.state_encoder import block_category


class SurvivalReward:
    """
    Pure, deterministic reward over snapshot transitions.

    Terms (all additive, all bounded):
    - survival bonus for every non-fatal tick
    - health delta, as a fraction of max health, times a weight
    - exploration: horizontal displacement, capped
    - interaction: INTERACT while a block or entity was within reach
    - hazards: hanging over air, burning
    - well fed
    """

    def __init__(self, config: RewardConfig = None):
        self.config = config or RewardConfig()
        self._check_dominance()

    def _check_dominance(self):
        c = self.config
        weights = {
            'health_delta_weight': c.health_delta_weight,
            'exploration_weight': c.exploration_weight,
            'max_exploration_distance': c.max_exploration_distance,
            'interaction_bonus': c.interaction_bonus,
            'above_air_penalty': c.above_air_penalty,
            'fire_penalty': c.fire_penalty,
            'well_fed_bonus': c.well_fed_bonus,
        }
        for name, value in weights.items():
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be finite and >= 0, got {value}")
        if not math.isfinite(c.death_penalty):
            raise ValueError("death_penalty must be finite")
        if not c.death_penalty < self.worst_shaped_reward():
            raise ValueError(
                f"death_penalty {c.death_penalty} does not dominate the worst "
                f"shaped reward {self.worst_shaped_reward()}")

    def worst_shaped_reward(self) -> float:
        """Lowest reward any non-death transition can earn."""
        c = self.config
        return (min(c.survival_bonus, 0.0)
                - c.health_delta_weight
                - c.above_air_penalty
                - c.fire_penalty)

    def best_shaped_reward(self) -> float:
        c = self.config
        return (max(c.survival_bonus, 0.0)
                + c.health_delta_weight
                + c.exploration_weight * c.max_exploration_distance
                + c.interaction_bonus
                + c.well_fed_bonus)

    def interaction_possible(self, snapshot: Snapshot) -> bool:
        """Something to hit or dig within reach."""
        if block_category(snapshot.block_ahead) not in ('air', 'none'):
            return True
        nearest = snapshot.nearest_entity()
        return nearest is not None and nearest.distance <= self.config.interaction_reach

    def components(self, prev: Snapshot, action: Action,
                   next_snapshot: Snapshot) -> Dict[str, float]:
        """Individual shaping terms, useful for debugging reward design."""
        c = self.config

        max_health = prev.max_health if prev.max_health > 0 else 1.0
        health_frac = (next_snapshot.health - prev.health) / max_health
        health_frac = min(max(health_frac, -1.0), 1.0)

        dx = next_snapshot.position[0] - prev.position[0]
        dz = next_snapshot.position[2] - prev.position[2]
        moved = min(math.hypot(dx, dz), c.max_exploration_distance)

        interacted = (action == Action.INTERACT and self.interaction_possible(prev))
        over_air = (not next_snapshot.on_ground
                    and block_category(next_snapshot.block_below) == 'air')
        well_fed = next_snapshot.food >= next_snapshot.max_food

        return {
            'survival': c.survival_bonus,
            'health': c.health_delta_weight * health_frac,
            'exploration': c.exploration_weight * moved,
            'interaction': c.interaction_bonus if interacted else 0.0,
            'over_air': -c.above_air_penalty if over_air else 0.0,
            'fire': -c.fire_penalty if next_snapshot.on_fire else 0.0,
            'well_fed': c.well_fed_bonus if well_fed else 0.0,
        }

    def reward(self, prev: Snapshot, action: Action,
               next_snapshot: Snapshot) -> float:
        if next_snapshot.is_dead:
            return self.config.death_penalty
        return float(sum(self.components(prev, action, next_snapshot).values()))

    __call__ = reward
