"""
Survival AI — Tabular Q-learning agents that learn to stay alive.

Each agent senses a game world, discretizes it into a state key, picks an
action epsilon-greedily and learns from a shaped reward in which death
dominates everything else. Connections are retried with bounded backoff and
the value table is checkpointed between episodes.

Usage:
    python -m survival_ai.train_survival --agents 2 --duration 300
"""

from survival_ai.config import AgentConfig, ResetPolicy
from survival_ai.environment import Action, EntityInfo, Environment, Snapshot
from survival_ai.state_encoder import SurvivalStateEncoder
from survival_ai.q_learner import QLearner, QTable
from survival_ai.reward import SurvivalReward
from survival_ai.persistence import QTableStore
from survival_ai.connection import ConnectionManager, ConnectionState
from survival_ai.supervisor import EpisodeSupervisor, TerminalCause
from survival_ai.stats import EpisodeSummary, StatsTracker
from survival_ai.agent import SurvivalAgent, run_team

__all__ = [
    'AgentConfig',
    'ResetPolicy',
    'Action',
    'EntityInfo',
    'Environment',
    'Snapshot',
    'SurvivalStateEncoder',
    'QLearner',
    'QTable',
    'SurvivalReward',
    'QTableStore',
    'ConnectionManager',
    'ConnectionState',
    'EpisodeSupervisor',
    'TerminalCause',
    'EpisodeSummary',
    'StatsTracker',
    'SurvivalAgent',
    'run_team',
]
