"""
Durable per-entity state with atomic read-modify-write.

This module provides the StateManager class which persists ``IssueState`` and
``PRState`` records as JSON documents, one file per entity key. The state
manager ensures data integrity through:

- Atomic file writes using temporary files and rename operations
- Per-key locking so a read-modify-write of one key never interleaves with
  another on the same key
- A per-record ``version`` counter; a write whose expected version does not
  match the stored one raises ``StateConflictError``

State File Structure:
    Keys are ``issue-{number}`` and ``pr-{number}``; each key is stored as
    ``{state_dir}/{key}.json`` holding the record's ``to_dict()`` form.

Transaction Support:
    ``update()`` re-reads the record, applies a mutation and writes it back,
    retrying from a fresh read when a conflict is detected::

        state = await store.update_pr(17, lambda pr: pr.record_fix(sha, "ci"))

Caching:
    Nothing is cached between calls. Every load reads the file, so callers
    always see the latest committed write for a key.
"""

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import aiofiles
import structlog

from repo_autopilot.exceptions import StateConflictError, WorkflowError
from repo_autopilot.models.domain import IssueState, PRState, issue_key, pr_key

log = structlog.get_logger(__name__)

R = TypeVar("R", IssueState, PRState)

MAX_CONFLICT_RETRIES = 5


class StateManager:
    """Manage entity state with atomic file operations.

    Attributes:
        state_dir: Directory where state files are stored.

    Thread Safety:
        Designed for single-process asyncio usage. Each key has its own lock;
        lock creation is guarded by a meta-lock.

    Example:
        >>> store = StateManager("/path/to/state")
        >>> issue = await store.load_issue(42)
        >>> issue.status = IssueStatus.EXECUTING
        >>> await store.save(issue)
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the state manager with a storage directory.

        Args:
            state_dir: Path to the directory for storing state files. Will be
                created if it does not exist, including parent directories.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        # Per-key locks to prevent concurrent modification of the same record
        self._locks: dict[str, asyncio.Lock] = {}
        # Meta-lock for lock creation
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create the I/O lock for a key.

        Note:
            Locks are never cleaned up during the lifetime of the
            StateManager instance.
        """
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def _get_state_path(self, key: str) -> Path:
        return self.state_dir / f"{key}.json"

    async def _read(self, key: str) -> dict[str, Any] | None:
        """Read a raw record without acquiring the key lock.

        Warning:
            Caller MUST hold the key lock.
        """
        state_path = self._get_state_path(key)
        if not state_path.exists():
            return None

        async with aiofiles.open(state_path) as f:
            content = await f.read()
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowError(f"Corrupt state file for {key}: {e}") from e

    async def _write_state(self, path: Path, data: dict[str, Any]) -> None:
        """Write state to disk atomically using a temporary file.

        State is written to a .tmp file first, then renamed to the target
        path. On POSIX systems, rename is atomic when source and destination
        are on the same filesystem.
        """
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(data, indent=2))

        tmp_path.replace(path)

    async def get(self, key: str) -> dict[str, Any] | None:
        """Load the raw record for a key, or None if nothing is stored."""
        lock = await self._get_lock(key)
        async with lock:
            return await self._read(key)

    async def put(self, key: str, data: dict[str, Any], expected_version: int | None) -> dict[str, Any]:
        """Write a raw record if the stored version still matches.

        Args:
            key: State key
            data: Record to store. Its ``version`` and ``updated_at`` fields
                are replaced by the store.
            expected_version: Version the caller read. ``None`` means the key
                must not exist yet.

        Returns:
            The record as written.

        Raises:
            StateConflictError: If another writer got there first
        """
        lock = await self._get_lock(key)
        async with lock:
            current = await self._read(key)
            actual_version = current.get("version", 0) if current is not None else None

            if expected_version is None and current is not None:
                raise StateConflictError(key, 0, actual_version)
            if expected_version is not None and actual_version != expected_version:
                raise StateConflictError(key, expected_version, actual_version if actual_version is not None else -1)

            record = dict(data)
            record["version"] = (expected_version or 0) + 1
            record["updated_at"] = self._next_timestamp(current)
            await self._write_state(self._get_state_path(key), record)

        log.debug("state_saved", key=key, version=record["version"])
        return record

    @staticmethod
    def _next_timestamp(current: dict[str, Any] | None) -> str:
        """Current time, but never earlier than the stored ``updated_at``."""
        now = datetime.now(UTC).isoformat()
        if current is not None and current.get("updated_at", "") > now:
            return current["updated_at"]
        return now

    async def load_issue(self, issue_number: int) -> IssueState | None:
        """Load an issue record, or None if the issue is untracked."""
        data = await self.get(issue_key(issue_number))
        return IssueState.from_dict(data) if data is not None else None

    async def load_pr(self, pr_number: int) -> PRState | None:
        """Load a pull request record, or None if the PR is untracked."""
        data = await self.get(pr_key(pr_number))
        return PRState.from_dict(data) if data is not None else None

    async def create(self, record: R) -> R:
        """Persist a brand-new record.

        Raises:
            StateConflictError: If a record already exists under its key
        """
        written = await self.put(record.key, record.to_dict(), expected_version=None)
        record.version = written["version"]
        record.updated_at = written["updated_at"]
        log.info("state_created", key=record.key)
        return record

    async def save(self, record: R) -> R:
        """Persist a record previously loaded from this store.

        The record's ``version`` is compared against the stored one; on
        success ``version`` and ``updated_at`` are updated in place.

        Raises:
            StateConflictError: If the record changed since it was loaded
        """
        written = await self.put(record.key, record.to_dict(), expected_version=record.version)
        record.version = written["version"]
        record.updated_at = written["updated_at"]
        return record

    async def _update(self, key: str, factory: Callable[[dict[str, Any]], R], mutate: Callable[[R], None]) -> R | None:
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            data = await self.get(key)
            if data is None:
                return None
            record = factory(data)
            mutate(record)
            try:
                return await self.save(record)
            except StateConflictError as e:
                log.warning("state_conflict_retry", key=key, attempt=attempt, error=e.message)
        raise StateConflictError(key, record.version, -1)

    async def update_issue(self, issue_number: int, mutate: Callable[[IssueState], None]) -> IssueState | None:
        """Read-modify-write an issue record, reapplying ``mutate`` on conflict.

        Returns:
            The updated record, or None if the issue is untracked.
        """
        return await self._update(issue_key(issue_number), IssueState.from_dict, mutate)

    async def update_pr(self, pr_number: int, mutate: Callable[[PRState], None]) -> PRState | None:
        """Read-modify-write a PR record, reapplying ``mutate`` on conflict.

        Returns:
            The updated record, or None if the PR is untracked.
        """
        return await self._update(pr_key(pr_number), PRState.from_dict, mutate)

    async def list_keys(self, prefix: str = "") -> list[str]:
        """List stored keys, optionally filtered by prefix (``issue-``, ``pr-``)."""
        keys = [path.stem for path in self.state_dir.glob("*.json")]
        return sorted(key for key in keys if key.startswith(prefix))

    async def get_active_issues(self) -> list[IssueState]:
        """Issues that have not reached a terminal status."""
        active = []
        for key in await self.list_keys("issue-"):
            data = await self.get(key)
            if data is None:
                continue
            issue = IssueState.from_dict(data)
            if not issue.status.is_terminal:
                active.append(issue)
        return active

    async def get_active_prs(self) -> list[PRState]:
        """Pull requests that have not been merged or escalated."""
        active = []
        for key in await self.list_keys("pr-"):
            data = await self.get(key)
            if data is None:
                continue
            pr = PRState.from_dict(data)
            if not pr.status.is_terminal:
                active.append(pr)
        return active
