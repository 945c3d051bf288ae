"""
Agent Configuration - Settings for one learning agent

Every component gets its own dataclass; AgentConfig groups them. Configs can
be built from code, from SURVIVAL_* environment variables, or from a JSON
file written by AgentConfig.save().
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import json
import os


class ResetPolicy(Enum):
    """What happens after a death or step-cap episode close"""
    RECONNECT = "reconnect"        # Drop the connection and respawn
    WORLD_RESET = "world_reset"    # Ask the external resetter for a new world


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, '') else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, '') else default


@dataclass
class LearnerConfig:
    """Tabular Q-learning hyperparameters"""
    learning_rate: float = 0.1
    discount_factor: float = 0.9
    epsilon: float = 1.0           # Start fully exploratory
    min_epsilon: float = 0.01      # Never stop exploring entirely
    epsilon_decay: float = 0.9999  # Applied after every update
    seed: Optional[int] = None

    def validate(self):
        if not 0.0 < self.learning_rate <= 1.0:
            raise ValueError(f"learning_rate must be in (0, 1], got {self.learning_rate}")
        if not 0.0 <= self.discount_factor < 1.0:
            raise ValueError(f"discount_factor must be in [0, 1), got {self.discount_factor}")
        if not 0.0 < self.epsilon_decay < 1.0:
            raise ValueError(f"epsilon_decay must be in (0, 1), got {self.epsilon_decay}")
        if not 0.0 < self.min_epsilon <= self.epsilon <= 1.0:
            raise ValueError(
                f"need 0 < min_epsilon <= epsilon <= 1, got "
                f"{self.min_epsilon} / {self.epsilon}")

    @classmethod
    def from_env(cls) -> 'LearnerConfig':
        seed = os.getenv('SURVIVAL_SEED')
        return cls(
            learning_rate=_env_float('SURVIVAL_LEARNING_RATE', 0.1),
            discount_factor=_env_float('SURVIVAL_DISCOUNT', 0.9),
            min_epsilon=_env_float('SURVIVAL_MIN_EPSILON', 0.01),
            epsilon_decay=_env_float('SURVIVAL_EPSILON_DECAY', 0.9999),
            seed=int(seed) if seed else None,
        )


@dataclass
class EncoderConfig:
    """Discretization of snapshots into state keys"""
    entity_slots: int = 5
    health_buckets: int = 5
    food_buckets: int = 4
    # Upper edges of the distance buckets; anything beyond the last is "far"
    distance_edges: Tuple[float, ...] = (2.0, 4.0, 8.0, 16.0)

    def validate(self):
        if self.entity_slots < 0:
            raise ValueError("entity_slots must be >= 0")
        if self.health_buckets < 1 or self.food_buckets < 1:
            raise ValueError("bucket counts must be >= 1")
        if list(self.distance_edges) != sorted(self.distance_edges):
            raise ValueError("distance_edges must be ascending")


@dataclass
class RewardConfig:
    """Reward shaping. Every term is bounded; death dominates them all."""
    death_penalty: float = -100.0
    survival_bonus: float = 0.1
    health_delta_weight: float = 20.0    # per full health bar
    exploration_weight: float = 0.1
    max_exploration_distance: float = 5.0
    interaction_bonus: float = 0.3
    interaction_reach: float = 4.0
    above_air_penalty: float = 0.5
    fire_penalty: float = 1.0
    well_fed_bonus: float = 0.05


@dataclass
class ConnectionConfig:
    """Reconnection policy"""
    max_attempts: int = 5
    base_delay: float = 5.0     # seconds, multiplied by the attempt number
    stagger: float = 2.0        # seconds per agent index, spreads reconnects
    reset_delay: float = 2.0    # wait before an intentional reconnect

    def validate(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay <= 0.0:
            raise ValueError(f"base_delay must be > 0, got {self.base_delay}")
        if self.stagger < 0.0 or self.reset_delay < 0.0:
            raise ValueError(
                f"stagger and reset_delay must be >= 0, got "
                f"{self.stagger} / {self.reset_delay}")

    @classmethod
    def from_env(cls) -> 'ConnectionConfig':
        return cls(
            max_attempts=_env_int('SURVIVAL_MAX_ATTEMPTS', 5),
            base_delay=_env_float('SURVIVAL_RETRY_DELAY', 5.0),
            stagger=_env_float('SURVIVAL_RETRY_STAGGER', 2.0),
            reset_delay=_env_float('SURVIVAL_RESET_DELAY', 2.0),
        )


@dataclass
class SupervisorConfig:
    """Episode loop settings"""
    tick_interval: float = 0.05      # 50 ms, one game physics tick
    max_episode_steps: int = 2000
    action_timeout: float = 1.0
    checkpoint_every: int = 10       # episodes
    checkpoint_dir: str = "checkpoints"
    reset_policy: ResetPolicy = ResetPolicy.RECONNECT

    @classmethod
    def from_env(cls) -> 'SupervisorConfig':
        return cls(
            tick_interval=_env_float('SURVIVAL_TICK_INTERVAL', 0.05),
            max_episode_steps=_env_int('SURVIVAL_MAX_STEPS', 2000),
            action_timeout=_env_float('SURVIVAL_ACTION_TIMEOUT', 1.0),
            checkpoint_every=_env_int('SURVIVAL_CHECKPOINT_EVERY', 10),
            checkpoint_dir=os.getenv('SURVIVAL_CHECKPOINT_DIR', 'checkpoints'),
            reset_policy=ResetPolicy(os.getenv('SURVIVAL_RESET_POLICY', 'reconnect')),
        )


@dataclass
class AgentConfig:
    """Master configuration for one agent"""
    agent_id: str = "Learner1"
    agent_index: int = 0            # Position in a team, drives stagger
    shared_table: bool = False      # Serialize table writes for cross-agent sharing

    learner: LearnerConfig = field(default_factory=LearnerConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    reward: RewardConfig = field(default_factory=RewardConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)

    def validate(self):
        self.learner.validate()
        self.encoder.validate()
        self.connection.validate()
        if self.supervisor.max_episode_steps < 1:
            raise ValueError("max_episode_steps must be >= 1")

    @classmethod
    def from_env(cls, agent_id: str = None, agent_index: int = 0) -> 'AgentConfig':
        """Load from environment variables"""
        return cls(
            agent_id=agent_id or os.getenv('SURVIVAL_AGENT_ID', 'Learner1'),
            agent_index=agent_index,
            learner=LearnerConfig.from_env(),
            connection=ConnectionConfig.from_env(),
            supervisor=SupervisorConfig.from_env(),
        )

    def for_agent(self, agent_id: str, agent_index: int) -> 'AgentConfig':
        """Copy of this config for another team member"""
        data = self.to_dict()
        data['agent_id'] = agent_id
        data['agent_index'] = agent_index
        return AgentConfig.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize configuration"""
        data = asdict(self)
        data['supervisor']['reset_policy'] = self.supervisor.reset_policy.value
        data['encoder']['distance_edges'] = list(self.encoder.distance_edges)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentConfig':
        supervisor = dict(data.get('supervisor', {}))
        if 'reset_policy' in supervisor:
            supervisor['reset_policy'] = ResetPolicy(supervisor['reset_policy'])
        encoder = dict(data.get('encoder', {}))
        if 'distance_edges' in encoder:
            encoder['distance_edges'] = tuple(encoder['distance_edges'])
        return cls(
            agent_id=data.get('agent_id', 'Learner1'),
            agent_index=data.get('agent_index', 0),
            shared_table=data.get('shared_table', False),
            learner=LearnerConfig(**data.get('learner', {})),
            encoder=EncoderConfig(**encoder),
            reward=RewardConfig(**data.get('reward', {})),
            connection=ConnectionConfig(**data.get('connection', {})),
            supervisor=SupervisorConfig(**supervisor),
        )

    def save(self, filepath: str):
        """Save configuration to file"""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'AgentConfig':
        """Load configuration from file"""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)
