"""
Q-Table Store - Serialization and checkpointing of learned values.

A blob is JSON: a list of [state_key, {action_name: value}] pairs in
insertion order. Order carries no meaning; loading any permutation gives an
equivalent table.

Checkpoint files are named qtable_<agent>_<episode>.json and written
atomically, so a crash mid-save leaves the previous checkpoint intact.
"""

import json
import logging
import os
import re
import tempfile
from typing import List, Optional, Tuple

from survival_ai.environment import Action
from survival_ai.q_learner import QTable

logger = logging.getLogger(__name__)

_CHECKPOINT_RE = re.compile(r'^qtable_(?P<agent>.+)_(?P<episode>\d+)\.json$')


def save(table: QTable) -> bytes:
    """Serialize a table to a JSON blob."""
    pairs = [
        [state, {action.key: value for action, value in row.items()}]
        for state, row in table.items()
    ]
    return json.dumps(pairs).encode('utf-8')


def load(blob: bytes, shared: bool = False) -> QTable:
    """Deserialize a blob produced by save()."""
    data = json.loads(blob.decode('utf-8') if isinstance(blob, bytes) else blob)
    if not isinstance(data, list):
        raise ValueError("q-table blob must be a list of [state, values] pairs")

    table = QTable(shared=shared)
    for entry in data:
        if not isinstance(entry, list) or len(entry) != 2:
            raise ValueError(f"bad q-table entry: {entry!r}")
        state, values = entry
        if not isinstance(state, str) or not isinstance(values, dict):
            raise ValueError(f"bad q-table entry: {entry!r}")
        for action_key, value in values.items():
            try:
                action = Action.from_key(action_key)
            except KeyError:
                raise ValueError(f"unknown action {action_key!r}") from None
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"non-numeric value for {state!r}/{action_key}")
            table.set(state, action, float(value))
    return table


class QTableStore:
    """
    Checkpoint directory for one or more agents.

    Saves are best-effort: failures are logged and reported as False so the
    learning loop never dies because a disk filled up.
    """

    def __init__(self, store_path: str = "checkpoints"):
        self.store_path = store_path

    def checkpoint_path(self, agent_id: str, episode: int) -> str:
        return os.path.join(self.store_path, f"qtable_{agent_id}_{episode}.json")

    def list_checkpoints(self, agent_id: str) -> List[Tuple[int, str]]:
        """(episode, path) pairs for an agent, oldest first."""
        if not os.path.isdir(self.store_path):
            return []
        found = []
        for name in os.listdir(self.store_path):
            match = _CHECKPOINT_RE.match(name)
            if match and match.group('agent') == agent_id:
                found.append((int(match.group('episode')),
                              os.path.join(self.store_path, name)))
        found.sort()
        return found

    def latest_checkpoint(self, agent_id: str) -> Optional[Tuple[int, str]]:
        checkpoints = self.list_checkpoints(agent_id)
        return checkpoints[-1] if checkpoints else None

    def write_checkpoint(self, table: QTable, agent_id: str, episode: int) -> bool:
        path = self.checkpoint_path(agent_id, episode)
        try:
            os.makedirs(self.store_path, exist_ok=True)
            with table.lock():
                blob = save(table)
            fd, tmp_path = tempfile.mkstemp(dir=self.store_path, suffix='.tmp')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(blob)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, ValueError) as e:
            logger.error(f"{agent_id} error saving Q-table to {path}: {e}")
            return False

        logger.info(f"{agent_id} saved Q-table ({len(table)} states) to {path}")
        return True

    def read_checkpoint(self, path: str, shared: bool = False) -> QTable:
        with open(path, 'rb') as f:
            return load(f.read(), shared=shared)

    def restore_latest(self, agent_id: str, into: QTable) -> Optional[int]:
        """
        Merge the newest readable checkpoint into an existing table.

        Returns the checkpoint's episode number, or None if nothing loaded.
        Unreadable checkpoints are skipped in favor of older ones.
        """
        for episode, path in reversed(self.list_checkpoints(agent_id)):
            try:
                loaded = self.read_checkpoint(path)
            except (OSError, ValueError) as e:
                logger.warning(f"{agent_id} skipping unreadable checkpoint {path}: {e}")
                continue
            into.merge(loaded)
            logger.info(f"{agent_id} loaded existing Q-table from {path} "
                        f"({len(loaded)} states)")
            return episode

        logger.info(f"{agent_id} starting with fresh Q-table")
        return None
