"""Shared fakes for the test suite: a scripted model client and an in-memory snapshot backend."""

import dataclasses
import os
from typing import Dict, List, Optional

import pytest

from config import engine_config
from engine.checkpoints import CheckpointStore
from engine.orchestrator import CodingEngine
from tools import build_default_registry

TEST_MODEL_ID = "us.anthropic.claude-sonnet-4-5-20250929-v1:0"


class ScriptedModelClient:
    """Replays one scripted response per stream() call.

    A script entry is a string (streamed in small chunks), a list of chunks,
    or an exception instance to raise.
    """

    def __init__(self, script=None, model_id: str = TEST_MODEL_ID, chat_response: str = "",
                 chunk_size: int = 7):
        self.script = list(script or [])
        self.model_id = model_id
        self.chat_response = chat_response
        self.chunk_size = chunk_size
        self.calls: List[List[Dict[str, str]]] = []
        self.chat_calls = 0

    def _next(self):
        if not self.script:
            return "Nothing left to do."
        return self.script.pop(0)

    async def stream(self, messages, cancel_event=None):
        self.calls.append([dict(m) for m in messages])
        entry = self._next()
        if isinstance(entry, BaseException):
            raise entry
        chunks = entry if isinstance(entry, list) else [
            entry[i:i + self.chunk_size] for i in range(0, len(entry), self.chunk_size)]
        for chunk in chunks:
            if cancel_event is not None and cancel_event.is_set():
                return
            yield chunk

    async def chat(self, messages):
        self.chat_calls += 1
        return self.chat_response


class FakeSnapshots:
    """SnapshotBackend that copies every file under root into memory."""

    def __init__(self, root: str, available: bool = True, fail_restore: bool = False):
        self.root = root
        self._available = available
        self.fail_restore = fail_restore
        self.saved: Dict[str, Dict[str, str]] = {}
        self.restored: List[str] = []
        self.discarded: List[str] = []

    def _files(self) -> Dict[str, str]:
        out = {}
        for dirpath, _, filenames in os.walk(self.root):
            for name in filenames:
                full = os.path.join(dirpath, name)
                with open(full, "r", encoding="utf-8") as f:
                    out[os.path.relpath(full, self.root)] = f.read()
        return out

    def available(self) -> bool:
        return self._available

    def has_changes(self) -> bool:
        return True

    def snapshot(self, message: str) -> str:
        self.saved[message] = self._files()
        return message

    def list_snapshots(self) -> List[str]:
        return list(self.saved)

    def restore(self, ref: str) -> None:
        if self.fail_restore:
            raise RuntimeError("restore exploded")
        state = self.saved[ref]
        for rel in self._files():
            if rel not in state:
                os.remove(os.path.join(self.root, rel))
        for rel, content in state.items():
            full = os.path.join(self.root, rel)
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "w", encoding="utf-8") as f:
                f.write(content)
        self.restored.append(ref)

    def discard(self, ref: str) -> None:
        self.saved.pop(ref, None)
        self.discarded.append(ref)


@pytest.fixture
def project(tmp_path):
    """A small project tree."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 1\n")
    (tmp_path / "README.md").write_text("# demo\n")
    return tmp_path


@pytest.fixture
def test_config():
    return dataclasses.replace(
        engine_config,
        max_iterations=10,
        max_messages=12,
        keep_recent=6,
        prune_target_fraction=0.7,
        protect_recent=2,
        cache_ttl=120,
        cache_max_entries=50,
        truncate_max_chars=3000,
        truncate_max_lines=100,
        max_tokens_per_session=0,
        max_cost_per_session=0,
        tool_timeout=10,
        chat_timeout=5,
        run_related_tests=False,
        checkpoints_enabled=True,
        auto_approve=True,
    )


@pytest.fixture
def snapshots(project):
    return FakeSnapshots(str(project))


@pytest.fixture
def make_engine(project, test_config, snapshots):
    """Factory: make_engine(script, **overrides) -> (engine, client)."""

    def _make(script=None, client: Optional[ScriptedModelClient] = None, **kwargs):
        client = client or ScriptedModelClient(script)
        config = kwargs.pop("config", test_config)
        engine = CodingEngine(
            client,
            kwargs.pop("registry", None) or build_default_registry(),
            working_directory=str(project),
            config=config,
            checkpoints=kwargs.pop("checkpoints", CheckpointStore(snapshots)),
            **kwargs,
        )
        return engine, client

    return _make
