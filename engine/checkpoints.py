"""
Checkpoints around destructive tool batches, backed by git stash.

A checkpoint saves the dirty working tree (tracked + untracked) as a stash entry
and leaves the files in place. Rollback resets to the recorded HEAD, cleans
untracked files and re-applies the entry; commit just drops it. On a clean tree
no stash entry is written but the HEAD baseline is still recorded, so a rollback
still undoes whatever the batch did.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from engine.errors import CheckpointError

logger = logging.getLogger(__name__)


class SnapshotBackend(Protocol):
    def available(self) -> bool: ...

    def has_changes(self) -> bool: ...

    def snapshot(self, message: str) -> str: ...

    def list_snapshots(self) -> List[str]: ...

    def restore(self, ref: str) -> None: ...

    def discard(self, ref: str) -> None: ...


class GitError(RuntimeError):
    pass


class GitSnapshots:
    """SnapshotBackend over the git CLI in working_directory."""

    def __init__(self, working_directory: str, timeout: int = 60):
        self.working_directory = working_directory
        self.timeout = timeout
        self._bases: Dict[str, str] = {}

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            proc = subprocess.run(
                ["git", *args], cwd=self.working_directory,
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise GitError(f"git {' '.join(args)} failed: {e}") from e
        if check and proc.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.returncode}")
        return proc

    def available(self) -> bool:
        try:
            inside = self._git("rev-parse", "--is-inside-work-tree", check=False)
            if inside.returncode != 0 or inside.stdout.strip() != "true":
                return False
            return self._git("rev-parse", "--verify", "-q", "HEAD", check=False).returncode == 0
        except GitError:
            return False

    def has_changes(self) -> bool:
        return bool(self._git("status", "--porcelain").stdout.strip())

    def snapshot(self, message: str) -> str:
        self._bases[message] = self._git("rev-parse", "HEAD").stdout.strip()
        if self.has_changes():
            self._git("stash", "push", "-u", "-m", message)
            # stash push cleans the tree; put the work back, keeping the entry
            try:
                self._git("stash", "apply", "--index", "stash@{0}")
            except GitError as e:
                self._bases.pop(message, None)
                self._unstash(message)
                raise GitError(f"Could not re-apply stashed work, restored it instead: {e}") from e
            logger.debug(f"Stashed working tree as {message}")
        return message

    def _unstash(self, message: str) -> None:
        """Pop a just-pushed entry back into the tree; it must not be left only in the stash."""
        self._git("reset", "--hard", "HEAD")
        self._git("clean", "-fd")
        try:
            self._git("stash", "pop", "--index", "stash@{0}")
        except GitError:
            logger.warning(f"stash pop --index failed for {message}, retrying without --index")
            self._git("reset", "--hard", "HEAD")
            self._git("stash", "pop", "stash@{0}")

    def list_snapshots(self) -> List[str]:
        out =self._git("stash", "list").stdout
        return [line for line in out.splitlines() if line.strip()]

    def _find(self, ref: str) -> Optional[str]:
        for i, line in enumerate(self.list_snapshots()):
            if line.endswith(ref):
                return f"stash@{{{i}}}"
        return None

    def restore(self, ref: str) -> None:
        base = self._bases.get(ref, "HEAD")
        self._git("reset", "--hard", base)
        self._git("clean", "-fd")
        entry = self._find(ref)
        if entry:
            self._git("stash", "apply", "--index", entry)

    def discard(self, ref: str) -> None:
        self._bases.pop(ref, None)
        entry = self._find(ref)
        if entry:
            self._git("stash", "drop", entry)


@dataclass
class Checkpoint:
    id: str
    label: str
    created_at: float
    ref: Optional[str] = None
    consumed: bool = False


class CheckpointStore:
    """At most one open checkpoint; every operation holds the same lock."""

    def __init__(self, snapshots: SnapshotBackend, prefix: str = "codeloop-checkpoint"):
        self.snapshots = snapshots
        self.prefix = prefix
        self._lock = threading.RLock()
        self._current: Optional[Checkpoint] = None
        self._counter = 0

    @property
    def current(self) -> Optional[Checkpoint]:
        return self._current

    def has_open(self) -> bool:
        with self._lock:
            return self._current is not None and not self._current.consumed

    def checkpoint(self, label: str) -> Optional[Checkpoint]:
        """Open a checkpoint. Returns None when snapshots are unavailable or fail."""
        with self._lock:
            if self.has_open():
                logger.warning(f"Checkpoint {self._current.id} still open; reusing it for {label}")
                return self._current
            if not self.snapshots.available():
                logger.warning("Not a git repository with commits, skipping checkpoint")
                return None
            self._counter += 1
            cp_id = f"cp-{int(time.time())}-{self._counter}"
            message = f"{self.prefix}-{label}-{cp_id}"
            try:
                ref = self.snapshots.snapshot(message)
            except Exception as e:
                logger.warning(f"Could not create checkpoint {label}: {e}")
                return None
            self._current = Checkpoint(id=cp_id, label=label, created_at=time.time(), ref=ref)
            logger.info(f"Created checkpoint {cp_id} ({label})")
            return self._current

    def commit(self) -> None:
        """Discard the open checkpoint without touching the working tree."""
        with self._lock:
            cp = self._current
            if cp is None or cp.consumed:
                return
            try:
                self.snapshots.discard(cp.ref)
            except Exception as e:
                logger.warning(f"Could not drop checkpoint {cp.id}: {e}")
            cp.consumed = True
            self._current = None
            logger.info(f"Committed checkpoint {cp.id}")

    def rollback(self) -> bool:
        """Restore the pre-checkpoint tree and discard the checkpoint. False if none open."""
        with self._lock:
            cp = self._current
            if cp is None or cp.consumed:
                return False
            cp.consumed = True
            self._current = None
            try:
                self.snapshots.restore(cp.ref)
            except Exception as e:
                logger.error(f"Rollback of checkpoint {cp.id} failed: {e}")
                raise CheckpointError(
                    f"Rollback of checkpoint {cp.id} failed: {e}. "
                    f"The saved state is kept as '{cp.ref}' (see `git stash list`)."
                ) from e
            try:
                self.snapshots.discard(cp.ref)
            except Exception as e:
                logger.warning(f"Restored checkpoint {cp.id} but could not drop it: {e}")
            logger.info(f"Rolled back checkpoint {cp.id}")
            return True
