"""
Training script for the survival Q-learning agents.

Runs a team of agents against the simulated survival world. Checkpoints land
in --checkpoint-dir as qtable_<agent>_<episode>.json and are picked up again
on the next run; survival history goes to --stats-dir.

Usage:
    python -m survival_ai.train_survival
    python -m survival_ai.train_survival --agents 3 --duration 300
    python -m survival_ai.train_survival --shared-table --seed 7
    python -m survival_ai.train_survival --config agent.json --verbose
"""

import argparse
import asyncio
import logging
import os
import sys

from survival_ai.agent import run_team
from survival_ai.config import AgentConfig
from survival_ai.errors import LearningInvariantError
from survival_ai.sim import SimulatedConnector


def main():
    parser = argparse.ArgumentParser(
        description='Train survival Q-learning agents in the simulated world'
    )
    parser.add_argument('--agents', '-n', type=int, default=1,
                        help='Number of agents (default: 1)')
    parser.add_argument('--duration', '-d', type=float, default=60.0,
                        help='Seconds to train (default: 60)')
    parser.add_argument('--config', type=str, default=None,
                        help='AgentConfig JSON file (default: SURVIVAL_* env vars)')
    parser.add_argument('--checkpoint-dir', type=str, default=None,
                        help='Where Q-table checkpoints are written')
    parser.add_argument('--stats-dir', type=str, default='stats',
                        help='Where stats_<agent>.json is written (default: stats)')
    parser.add_argument('--shared-table', action='store_true',
                        help='All agents learn into one shared Q-table')
    parser.add_argument('--world-size', type=int, default=16,
                        help='Simulated world edge length (default: 16)')
    parser.add_argument('--seed', type=int, default=0,
                        help='World seed (default: 0)')
    parser.add_argument('--stagger', type=float, default=2.0,
                        help='Seconds between agent starts (default: 2)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if args.config:
        if not os.path.exists(args.config):
            print(f"ERROR: Config file not found: {args.config}")
            sys.exit(1)
        config = AgentConfig.load(args.config)
    else:
        config = AgentConfig.from_env()
    if args.checkpoint_dir:
        config.supervisor.checkpoint_dir = args.checkpoint_dir
    if args.shared_table:
        config.shared_table = True

    names = [f"Learner{i + 1}" for i in range(args.agents)]
    connector = SimulatedConnector(size=args.world_size, seed=args.seed)

    print("=" * 70)
    print("SURVIVAL Q-LEARNING - Simulated World Training")
    print(f"Agents: {', '.join(names)} | Duration: {args.duration:.0f}s | "
          f"Table: {'shared' if config.shared_table else 'per agent'}")
    print("=" * 70)
    print()

    try:
        agents = asyncio.run(run_team(
            config, connector, names,
            start_stagger=args.stagger,
            duration=args.duration,
            stats_dir=args.stats_dir,
        ))
    except LearningInvariantError as e:
        print(f"ERROR: learning stopped: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted; checkpoints up to the last save are kept.")
        sys.exit(130)

    print()
    for agent in agents:
        stats = agent.context.stats.get_stats()
        learning = agent.context.learner.get_stats()
        print(f"  {agent.agent_id}: {stats['total_lives']} lives, "
              f"avg survival {stats['average_survival']:.1f}s, "
              f"best {stats['max_survival']:.1f}s, "
              f"{learning['states']} states, epsilon {learning['epsilon']:.3f}")
    print(f"\n  Checkpoints: {config.supervisor.checkpoint_dir}/")
    print(f"  Stats:       {args.stats_dir}/")


if __name__ == '__main__':
    main()
