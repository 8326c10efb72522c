"""
Config store: the authoritative, versioned mirror of the cluster configuration.

The store keeps one immutable StoreData snapshot in memory and replaces it on
every commit. Writers submit ChangeBatches; the whole batch is validated
against the current snapshot and then written to the durable SQLite file in
one transaction together with the revision bump.

Invariants:
    - A batch is applied all-or-nothing: on any validation or durability
      failure neither SQLite nor the in-memory snapshot changes
    - Commits are serialized by an asyncio.Lock and a compare-and-swap on
      the durable revision, so two members sharing the file never overwrite
      each other; the loser gets ConflictError
    - Every checked reference resolves after the batch
    - Reading ``data`` before the initial load raises NotReadyError

How to change safely:
    - New collections need a schema in store/schemas.py first
    - Keep validation free of I/O; it runs while holding the commit lock
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from ..cluster.base import ChangeBus, ChangeNotice
from ..errors import ConflictError, NotReadyError, ValidationError
from .changes import ChangeBatch, apply_update, coerce_batch
from .data import Doc, StoreData
from .durable import DurableStore, RevisionMismatchError
from .ids import IdGenerator
from .schemas import COLLECTIONS, REFERENCES, UNIQUE_KEYS, schema_errors

logger = logging.getLogger(__name__)


class ConfigStore:
    """In-memory, indexed config snapshot backed by a DurableStore.

    Example:
        >>> store = ConfigStore(DurableStore(path), server_secret="s3cr3t")
        >>> await store.load()
        >>> system_id = store.generate_id()
        >>> await store.make_changes({"insert": {"systems": [{"_id": system_id, "name": "demo"}]}})
    """

    def __init__(
        self,
        durable: DurableStore,
        bus: ChangeBus | None = None,
        server_secret: str = "",
        node_id: str = "node-1",
        id_generator: IdGenerator | None = None,
    ) -> None:
        self.durable = durable
        self.bus = bus
        self.node_id = node_id
        self._server_secret = server_secret
        self._ids = id_generator or IdGenerator()
        self._data: StoreData | None = None
        self._lock = asyncio.Lock()
        self._publish_tasks: set[asyncio.Task] = set()
        self.is_finished_initial_load = False

    # Loading

    async def load(self) -> StoreData:
        """Read every collection from durable storage and swap in the snapshot.

        Safe to call repeatedly; used both at boot and on peer notifications.
        """
        async with self._lock:
            return self._load_locked()

    async def reload(self) -> StoreData:
        return await self.load()

    def _load_locked(self) -> StoreData:
        if not self.is_finished_initial_load:
            self.durable.initialize()
        collections, revision = self.durable.load_all()
        unknown = set(collections) - set(COLLECTIONS)
        if unknown:
            logger.warning(
                "Ignoring unknown collections in durable store",
                extra={"collections": sorted(unknown)},
            )
        self._data = StoreData(collections, revision)
        if not self.is_finished_initial_load:
            self.is_finished_initial_load = True
            logger.info(
                "Config store initial load finished",
                extra={"revision": revision, "counts": self._counts(self._data)},
            )
        else:
            logger.debug("Config store reloaded", extra={"revision": revision})
        return self._data

    @staticmethod
    def _counts(data: StoreData) -> dict[str, int]:
        return {name: data.count(name) for name in COLLECTIONS}

    # Reads

    @property
    def data(self) -> StoreData:
        """Current snapshot.

        Raises:
            NotReadyError: Before the initial load finished
        """
        if self._data is None or not self.is_finished_initial_load:
            raise NotReadyError("Config store has not finished its initial load")
        return self._data

    @property
    def revision(self) -> int:
        return self.data.revision

    def generate_id(self) -> str:
        return self._ids.generate()

    def get_server_secret(self) -> str:
        return self._server_secret

    def get_local_cluster_info(self) -> Doc | None:
        """The cluster-member document owned by this server, if any."""
        for cluster in self.data.clusters:
            if cluster.get("owner_secret") == self._server_secret:
                return cluster
        return None

    # Writes

    async def make_changes(
        self,
        changes: ChangeBatch | dict[str, Any],
        expected_revision: int | None = None,
    ) -> int:
        """Validate and commit a batch atomically.

        Args:
            changes: ChangeBatch or its dict form
            expected_revision: Fail unless the store is still at this revision

        Returns:
            The new revision

        Raises:
            NotReadyError: Before the initial load finished
            ValidationError: If any part of the batch is invalid
            ConflictError: If the revision moved (locally or on a peer)
        """
        if not self.is_finished_initial_load:
            raise NotReadyError("Config store has not finished its initial load")
        batch = coerce_batch(changes)
        if batch.is_empty():
            return self.revision

        async with self._lock:
            current = self.data
            if expected_revision is not None and expected_revision != current.revision:
                raise ConflictError(
                    "Config changed since the batch was computed",
                    expected_revision=expected_revision,
                    actual_revision=current.revision,
                )

            collections, upserts, deletes = self._apply_batch(current, batch)
            new_revision = current.revision + 1

            try:
                self.durable.commit(current.revision, new_revision, upserts, deletes)
            except RevisionMismatchError as e:
                # a peer committed to the shared file; refresh so a retry sees its state
                self._load_locked()
                raise ConflictError(
                    "Config was changed by another member",
                    expected_revision=e.expected,
                    actual_revision=e.actual,
                ) from e

            self._data = StoreData(collections, new_revision)

        logger.info(
            "Config committed",
            extra={
                "revision": new_revision,
                "collections": sorted(batch.collections()),
                "upserts": len(upserts),
                "deletes": len(deletes),
            },
        )
        self._schedule_publish(
            ChangeNotice(
                origin=self.node_id,
                revision=new_revision,
                collections=tuple(sorted(batch.collections())),
            )
        )
        return new_revision

    def _apply_batch(
        self,
        current: StoreData,
        batch: ChangeBatch,
    ) -> tuple[dict[str, dict[str, Doc]], list[tuple[str, Doc]], list[tuple[str, str]]]:
        """Compute the post-batch collections without touching ``current``.

        Raises:
            ValidationError: With every problem found in the batch
        """
        errors: list[str] = []
        unknown = sorted(c for c in batch.collections() if c not in COLLECTIONS)
        if unknown:
            raise ValidationError(
                "Unknown collections in change batch",
                errors=[f"unknown collection '{c}'" for c in unknown],
            )

        working = {name: dict(docs) for name, docs in current.raw().items()}
        all_ids = {doc_id for docs in working.values() for doc_id in docs}
        upserted: dict[str, set[str]] = {name: set() for name in COLLECTIONS}
        removed: dict[str, set[str]] = {name: set() for name in COLLECTIONS}

        for collection, docs in batch.insert.items():
            for doc in docs:
                if not isinstance(doc, dict) or not doc.get("_id"):
                    errors.append(f"insert {collection}: document without _id")
                    continue
                doc_id = doc["_id"]
                if doc_id in all_ids:
                    errors.append(f"insert {collection}: duplicate id {doc_id}")
                    continue
                all_ids.add(doc_id)
                working[collection][doc_id] = copy.deepcopy(doc)
                upserted[collection].add(doc_id)

        for collection, docs in batch.update.items():
            for partial in docs:
                if not isinstance(partial, dict) or not partial.get("_id"):
                    errors.append(f"update {collection}: document without _id")
                    continue
                doc_id = partial["_id"]
                existing = working[collection].get(doc_id)
                if existing is None:
                    errors.append(f"update {collection}: unknown id {doc_id}")
                    continue
                working[collection][doc_id] = apply_update(existing, partial)
                upserted[collection].add(doc_id)

        for collection, ids in batch.remove.items():
            for doc_id in ids:
                if working[collection].pop(doc_id, None) is None:
                    errors.append(f"remove {collection}: unknown id {doc_id}")
                    continue
                removed[collection].add(doc_id)
                upserted[collection].discard(doc_id)

        if errors:
            raise ValidationError("Invalid change batch", errors=errors)

        for collection, ids in upserted.items():
            for doc_id in sorted(ids):
                errors.extend(schema_errors(collection, working[collection][doc_id]))

        errors.extend(self._reference_errors(working, upserted, removed))
        errors.extend(self._uniqueness_errors(working, upserted))

        if errors:
            raise ValidationError("Invalid change batch", errors=errors)

        upserts = [
            (collection, working[collection][doc_id])
            for collection, ids in upserted.items()
            for doc_id in sorted(ids)
        ]
        deletes = [
            (collection, doc_id)
            for collection, ids in removed.items()
            for doc_id in sorted(ids)
        ]
        return working, upserts, deletes

    @staticmethod
    def _reference_errors(
        working: dict[str, dict[str, Doc]],
        upserted: dict[str, set[str]],
        removed: dict[str, set[str]],
    ) -> list[str]:
        errors = []
        for ref in REFERENCES:
            if ref.deferred:
                continue
            # an untouched document can only dangle if its target collection lost documents
            scan_all = bool(removed[ref.target])
            if not scan_all and not upserted[ref.collection]:
                continue
            targets = working[ref.target]
            for doc_id, doc in working[ref.collection].items():
                if not scan_all and doc_id not in upserted[ref.collection]:
                    continue
                for value in ref.values(doc):
                    if value not in targets:
                        errors.append(
                            f"{ref.collection}[{doc_id}].{ref.path}: "
                            f"dangling reference {value} to {ref.target}"
                        )
        return errors

    @staticmethod
    def _uniqueness_errors(
        working: dict[str, dict[str, Doc]],
        upserted: dict[str, set[str]],
    ) -> list[str]:
        errors = []
        for rule in UNIQUE_KEYS:
            if not upserted[rule.collection]:
                continue
            seen: dict[Any, str] = {}
            for doc_id, doc in working[rule.collection].items():
                key = rule.key(doc)
                if key is None:
                    continue
                other = seen.get(key)
                if other is not None:
                    errors.append(
                        f"{rule.collection}: {rule.field} '{key[1]}' is already used by {other}"
                    )
                    continue
                seen[key] = doc_id
        return errors

    # Propagation

    def _schedule_publish(self, notice: ChangeNotice) -> None:
        if self.bus is None:
            return
        task = asyncio.create_task(self._publish(notice))
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_tasks.discard)

    async def _publish(self, notice: ChangeNotice) -> None:
        try:
            await self.bus.publish(notice)
        except Exception as e:
            logger.warning(
                f"Failed to publish change notice: {e}",
                extra={"revision": notice.revision},
                exc_info=True,
            )

    async def flush(self) -> None:
        """Wait for in-flight change notices to be published."""
        if self._publish_tasks:
            await asyncio.gather(*list(self._publish_tasks), return_exceptions=True)
