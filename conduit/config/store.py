"""
Configuration store with copy-on-write snapshots.

Every successful load produces a new immutable Snapshot with the next
epoch number. Executions capture the snapshot current at their start and
keep using it, so a reload never changes a run in flight. A load that
fails validation leaves the active snapshot untouched.

Usage:
    store = ConfigStore(registry=registry)
    store.load(["app.yaml"])
    snapshot = store.current()
    snapshot.document.endpoint("create_team")
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from conduit.errors import ConduitError, ConfigValidationError

from .linker import Linker
from .loader import load_document, parse_document
from .schemas import Document

if TYPE_CHECKING:
    from conduit.pipeline.step import ProviderRegistry

logger = logging.getLogger(__name__)

ReloadListener = Callable[["Snapshot"], None]


@dataclass(frozen=True)
class Snapshot:
    document: Document
    epoch: int
    loaded_at: datetime
    warnings: tuple[str, ...] = ()


class ConfigStore:
    """Holds the active configuration snapshot."""

    def __init__(self, registry: "ProviderRegistry | None" = None):
        self._linker = Linker(registry)
        self._current: Snapshot | None = None
        self._epoch = 0
        self._listeners: list[ReloadListener] = []

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def loaded(self) -> bool:
        return self._current is not None

    def current(self) -> Snapshot:
        """
        Raises:
            ConduitError: If nothing has been loaded yet
        """
        if self._current is None:
            raise ConduitError("No configuration loaded")
        return self._current

    def add_listener(self, listener: ReloadListener) -> None:
        """Call `listener` with every new snapshot after it becomes active."""
        self._listeners.append(listener)

    def replace(self, document: Document) -> Snapshot:
        """
        Link a document and make it the active snapshot.

        Raises:
            ConfigValidationError: The previous snapshot stays active
        """
        try:
            result = self._linker.link(document)
        except ConfigValidationError as e:
            logger.error(
                f"Configuration rejected ({len(e.issues)} issues); "
                f"keeping epoch {self._epoch}: {e}"
            )
            raise

        self._epoch += 1
        snapshot = Snapshot(
            document=result.document,
            epoch=self._epoch,
            loaded_at=datetime.now(UTC),
            warnings=result.warnings,
        )
        self._current = snapshot
        logger.info(
            f"Configuration epoch {snapshot.epoch} active ({len(result.warnings)} warnings)"
        )

        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    def load(self, paths: Iterable[str | Path]) -> Snapshot:
        """Load fragments from disk, link and activate them."""
        try:
            document = load_document(paths)
        except ConfigValidationError as e:
            logger.error(f"Configuration load failed; keeping epoch {self._epoch}: {e}")
            raise
        return self.replace(document)

    def load_dict(self, tree: dict) -> Snapshot:
        """Validate, link and activate an in-memory raw tree."""
        return self.replace(parse_document(tree))
