"""
Merge attempt persistence

A MergeAttemptContext is saved after every state transition so an attempt
can be inspected (``mergegate show``, ``GET /api/merge/{id}``) while it runs
and after it ends.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List, Protocol, Union

import structlog

from mergegate.execution_engine.merge_types import MergeAttemptContext

logger = structlog.get_logger(__name__)


class ContextNotFound(KeyError):
    pass


class ContextStore(Protocol):
    def save(self, context: MergeAttemptContext) -> None: ...

    def load(self, attempt_id: str) -> MergeAttemptContext: ...


class InMemoryContextStore:
    def __init__(self) -> None:
        self._contexts: Dict[str, str] = {}

    def save(self, context: MergeAttemptContext) -> None:
        # Stored serialized so callers never share a live, mutable context
        self._contexts[context.attempt_id] = context.model_dump_json()

    def load(self, attempt_id: str) -> MergeAttemptContext:
        try:
            raw = self._contexts[attempt_id]
        except KeyError:
            raise ContextNotFound(attempt_id) from None
        return MergeAttemptContext.model_validate_json(raw)

    def list_ids(self) -> List[str]:
        return list(self._contexts)


class JsonFileContextStore:
    """One JSON document per attempt under a directory"""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, attempt_id: str) -> Path:
        if not attempt_id or "/" in attempt_id or "\\" in attempt_id or attempt_id.startswith("."):
            raise ContextNotFound(attempt_id)
        return self.directory / f"{attempt_id}.json"

    def save(self, context: MergeAttemptContext) -> None:
        path = self._path(context.attempt_id)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{context.attempt_id}.", suffix=".tmp", dir=str(self.directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(context.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(
            "merge.context_saved",
            attempt_id=context.attempt_id,
            state=context.state.value,
            path=str(path),
        )

    def load(self, attempt_id: str) -> MergeAttemptContext:
        path = self._path(attempt_id)
        if not path.exists():
            raise ContextNotFound(attempt_id)
        return MergeAttemptContext.model_validate_json(path.read_text(encoding="utf-8"))

    def list_ids(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))
