"""File-backed persistence for per-bot execution state and trades."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from rulebot.types import ExecutionState, Trade

_SAFE_BOT_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def _bot_file(directory: Path, bot_id: str, suffix: str) -> Path:
    if not _SAFE_BOT_ID.match(bot_id) or bot_id in {".", ".."}:
        raise ValueError(f"invalid_bot_id: {bot_id!r}")
    return directory / f"{bot_id}{suffix}"


class JsonStateStore:
    """One JSON document per bot; writes replace the file atomically."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._state_dir.mkdir(parents=True, exist_ok=True)

    def load(self, bot_id: str) -> ExecutionState:
        """Persisted state, or a fresh one for a bot that has never fired."""
        path = _bot_file(self._state_dir, bot_id, ".json")
        if not path.exists():
            return ExecutionState()
        raw: Any = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"state_file_not_object: {path.name}")
        return ExecutionState.from_dict(raw)

    def save(self, bot_id: str, state: ExecutionState) -> None:
        path = _bot_file(self._state_dir, bot_id, ".json")
        serialized = json.dumps(state.to_dict(), ensure_ascii=True, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self._state_dir, prefix=f".{bot_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(serialized)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class JsonlTradeStore:
    """Append-only trade ledger, one JSONL file per bot."""

    def __init__(self, trades_dir: Path) -> None:
        self._trades_dir = trades_dir
        self._trades_dir.mkdir(parents=True, exist_ok=True)

    def append(self, trade: Trade) -> None:
        path = _bot_file(self._trades_dir, trade.bot_id, ".jsonl")
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(trade.to_dict(), ensure_ascii=True) + "\n")

    def load(self, bot_id: str) -> list[Trade]:
        """All trades for ``bot_id`` in the order they were written."""
        path = _bot_file(self._trades_dir, bot_id, ".jsonl")
        if not path.exists():
            return []
        return [
            Trade.from_dict(json.loads(line))
            for line in path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    def bot_ids(self) -> list[str]:
        return sorted(path.stem for path in self._trades_dir.glob("*.jsonl"))
