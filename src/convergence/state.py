"""Persistent store of last-applied resource state.

The store is the only process-wide mutable state in the engine. Its
lifecycle is explicit:

1. Loaded from disk when constructed
2. Mutated one resource at a time, only by the executor, after that
   resource's provider call succeeded
3. Flushed durably (temp file + fsync + atomic rename) after every mutation

FILE FORMAT:
```json
{
  "version": 1,
  "serial": 7,
  "resources": {
    "subnet.public_a": {
      "resource_type": "subnet",
      "provider_id": "subnet-0abc",
      "attributes": {"cidr_block": "10.0.1.0/24", ...},
      "outputs": {"arn": "...", ...},
      "last_applied_hash": "9f2c...",
      "dependencies": ["vpc.main"],
      "updated_at": "2026-01-01T00:00:00+00:00"
    }
  }
}
```

CONCURRENCY: Workers write distinct keys. Writes to the same key are
serialized by a per-key lock; flushes are serialized by a store-level lock
so concurrent writers never interleave partial files.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .resources import ResourceID

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1


class StateError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class StateConflict(Exception):
    """Persisted state and live provider state disagree.

    Surfaced for manual reconciliation. The engine never overwrites state
    that conflicts with the provider.
    """

    def __init__(self, resource_id: ResourceID | str, message: str) -> None:
        super().__init__(f"State conflict for {resource_id}: {message}")
        self.resource_id = str(resource_id)


@dataclass
class AppliedResource:
    """Last successfully applied state of one resource.

    Attributes:
        resource_type: Resource type.
        provider_id: Identifier assigned by the provider on create.
        attributes: Resolved input attributes sent to the provider.
        outputs: Attributes returned by the provider.
        last_applied_hash: Content hash of ``attributes``.
        dependencies: Addresses this resource depended on when applied.
        updated_at: Time of the last successful apply.
    """

    resource_type: str
    provider_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    last_applied_hash: str = ""
    dependencies: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def known_outputs(self) -> dict[str, Any]:
        """Outputs visible to references, including the provider id as ``id``."""
        return {"id": self.provider_id, **self.outputs}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "resource_type": self.resource_type,
            "provider_id": self.provider_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "last_applied_hash": self.last_applied_hash,
            "dependencies": list(self.dependencies),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppliedResource:
        """Create from dictionary."""
        return cls(
            resource_type=data["resource_type"],
            provider_id=data["provider_id"],
            attributes=data.get("attributes", {}),
            outputs=data.get("outputs", {}),
            last_applied_hash=data.get("last_applied_hash", ""),
            dependencies=list(data.get("dependencies", [])),
            updated_at=(
                datetime.fromisoformat(data["updated_at"])
                if data.get("updated_at")
                else datetime.now(UTC)
            ),
        )


# Read-only view consumed by the planner
AppliedState = Mapping[ResourceID, AppliedResource]


class StateStore:
    """JSON-file backed store of applied resources.

    Usage:
        store = StateStore(Path("convergence.state.json"))
        record = store.get(ResourceID("vpc", "main"))
        store.put(ResourceID("vpc", "main"), AppliedResource(...))
        store.remove(ResourceID("vpc", "main"))
    """

    def __init__(self, path: Path) -> None:
        """Open the store, loading any existing state file.

        Raises:
            StateError: If the file exists but cannot be parsed.
        """
        self._path = Path(path)
        self._resources: dict[ResourceID, AppliedResource] = {}
        self._serial = 0

        self._data_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._key_locks: dict[ResourceID, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def serial(self) -> int:
        """Monotonic counter bumped on every mutation."""
        return self._serial

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No state file, starting empty", extra={"state_path": str(self._path)})
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e

        if not isinstance(raw, dict) or "resources" not in raw:
            raise StateError(f"State file has no 'resources' mapping: {self._path}")

        version = raw.get("version", STATE_FILE_VERSION)
        if version != STATE_FILE_VERSION:
            raise StateError(
                f"Unsupported state file version {version} (expected {STATE_FILE_VERSION})"
            )

        try:
            for address, data in raw["resources"].items():
                self._resources[ResourceID.parse(address)] = AppliedResource.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"Malformed resource entry in {self._path}: {e}") from e

        self._serial = int(raw.get("serial", 0))
        logger.info(
            "Loaded state",
            extra={
                "state_path": str(self._path),
                "resource_count": len(self._resources),
                "serial": self._serial,
            },
        )

    def _key_lock(self, resource_id: ResourceID) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(resource_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[resource_id] = lock
            return lock

    def get(self, resource_id: ResourceID) -> AppliedResource | None:
        """Get a copy of the applied record for a resource."""
        with self._data_lock:
            record = self._resources.get(resource_id)
            return copy.deepcopy(record) if record else None

    def snapshot(self) -> dict[ResourceID, AppliedResource]:
        """Point-in-time copy of all applied records."""
        with self._data_lock:
            return copy.deepcopy(self._resources)

    def __contains__(self, resource_id: object) -> bool:
        with self._data_lock:
            return resource_id in self._resources

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._resources)

    def put(self, resource_id: ResourceID, record: AppliedResource) -> None:
        """Record a successful create/update and flush to disk.

        Raises:
            StateError: If the flush fails. The in-memory record is rolled back.
        """
        with self._key_lock(resource_id):
            with self._data_lock:
                previous = self._resources.get(resource_id)
                self._resources[resource_id] = copy.deepcopy(record)
                self._serial += 1
            try:
                self.flush()
            except StateError:
                self._restore(resource_id, previous)
                raise
        logger.debug("State updated", extra={"resource_id": str(resource_id)})

    def remove(self, resource_id: ResourceID) -> AppliedResource | None:
        """Forget a deleted resource and flush to disk."""
        with self._key_lock(resource_id):
            with self._data_lock:
                removed = self._resources.pop(resource_id, None)
                if removed is not None:
                    self._serial += 1
            if removed is not None:
                try:
                    self.flush()
                except StateError:
                    self._restore(resource_id, removed)
                    raise
        return removed

    def _restore(self, resource_id: ResourceID, previous: AppliedResource | None) -> None:
        """Undo an unflushed mutation. Caller holds the key lock."""
        with self._data_lock:
            if previous is None:
                self._resources.pop(resource_id, None)
            else:
                self._resources[resource_id] = previous
            self._serial -= 1

    def flush(self) -> None:
        """Write the current state atomically.

        Raises:
            StateError: If the file cannot be written.
        """
        with self._flush_lock:
            with self._data_lock:
                payload = {
                    "version": STATE_FILE_VERSION,
                    "serial": self._serial,
                    "resources": {
                        str(rid): record.to_dict()
                        for rid, record in sorted(self._resources.items(), key=lambda x: str(x[0]))
                    },
                }

            directory = self._path.parent
            try:
                directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=".state-", dir=directory)
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        json.dump(payload, handle, indent=2, sort_keys=True)
                        handle.write("\n")
                        handle.flush()
                        os.fsync(handle.fileno())
                    os.replace(tmp_name, self._path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
            except OSError as e:
                raise StateError(f"Failed to write state file {self._path}: {e}") from e


def check_drift(
    resource_id: ResourceID,
    record: AppliedResource,
    live_outputs: Mapping[str, Any],
) -> None:
    """Compare stored outputs with what the provider reports now.

    Only fields the store knows about are compared; providers may report
    additional fields.

    Raises:
        StateConflict: If any stored output differs from the live value.
    """
    drifted = sorted(
        key
        for key, stored in record.outputs.items()
        if key not in live_outputs or live_outputs[key] != stored
    )
    if drifted:
        raise StateConflict(
            resource_id,
            f"live state differs from last applied state in fields {drifted}",
        )
