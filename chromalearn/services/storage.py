"""
ChromaLearn Storage
Persistence collaborators for the knowledge base, feedback queue and history, training
examples and hybrid model blob. In-memory store for tests and single-process
use, JSON-file store for durable local deployments.
"""
import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from chromalearn.config import config
from chromalearn.services.learning.feedback import FeedbackEntry, TrainingExample, entries_from_dicts
from chromalearn.services.learning.knowledge_base import KnowledgeBase


class KnowledgeStore(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    async def load_knowledge_base(self) -> KnowledgeBase:
        """Load the knowledge base, or the default one if none is stored."""
        pass

    @abstractmethod
    async def save_knowledge_base(self, knowledge_base: KnowledgeBase) -> bool:
        """Store the knowledge base; False when rejected or failed."""
        pass

    @abstractmethod
    async def get_feedback_entries(self) -> List[FeedbackEntry]:
        """Pending feedback entries."""
        pass

    @abstractmethod
    async def save_feedback_entries(self, entries: List[FeedbackEntry]) -> bool:
        """Replace the pending feedback entries."""
        pass

    @abstractmethod
    async def get_feedback_history(self) -> List[FeedbackEntry]:
        """Every feedback entry ever accepted, oldest first."""
        pass

    @abstractmethod
    async def append_feedback_history(self, entry: FeedbackEntry) -> bool:
        """Append one entry to the history. The history is never rewritten."""
        pass

    @abstractmethod
    async def get_training_examples(self) -> List[TrainingExample]:
        pass

    @abstractmethod
    async def save_training_examples(self, examples: List[TrainingExample]) -> bool:
        pass

    @abstractmethod
    async def get_model_blob(self) -> Optional[bytes]:
        pass

    @abstractmethod
    async def save_model_blob(self, blob: bytes) -> bool:
        pass

    async def append_feedback_entry(self, entry: FeedbackEntry) -> bool:
        """Record one entry in the history, then queue it for the next learning cycle."""
        if not await self.append_feedback_history(entry):
            return False
        entries = await self.get_feedback_entries()
        entries.append(entry)
        return await self.save_feedback_entries(entries)

    async def append_training_example(self, example: TrainingExample) -> bool:
        examples = await self.get_training_examples()
        examples.append(example)
        return await self.save_training_examples(examples)

    @staticmethod
    def _accepts_version(stored_version: Optional[int], knowledge_base: KnowledgeBase) -> bool:
        if stored_version is not None and knowledge_base.version <= stored_version:
            logger.warning(
                f"Rejected knowledge base version {knowledge_base.version}, "
                f"stored version is {stored_version}"
            )
            return False
        return True


class InMemoryStore(KnowledgeStore):
    """Store holding serialized records in memory."""

    def __init__(self):
        self._knowledge_base: Optional[Dict[str, Any]] = None
        self._feedback: List[Dict[str, Any]] = []
        self._history: List[Dict[str, Any]] = []
        self._examples: List[Dict[str, Any]] = []
        self._model_blob: Optional[bytes] = None

    async def load_knowledge_base(self) -> KnowledgeBase:
        return KnowledgeBase.from_dict(self._knowledge_base)

    async def save_knowledge_base(self, knowledge_base: KnowledgeBase) -> bool:
        stored_version = self._knowledge_base["version"] if self._knowledge_base else None
        if not self._accepts_version(stored_version, knowledge_base):
            return False
        self._knowledge_base = knowledge_base.to_dict()
        return True

    async def get_feedback_entries(self) -> List[FeedbackEntry]:
        return entries_from_dicts(self._feedback)

    async def save_feedback_entries(self, entries: List[FeedbackEntry]) -> bool:
        self._feedback = [e.to_dict() for e in entries]
        return True

    async def get_feedback_history(self) -> List[FeedbackEntry]:
        return entries_from_dicts(self._history)

    async def append_feedback_history(self, entry: FeedbackEntry) -> bool:
        self._history.append(entry.to_dict())
        return True

    async def get_training_examples(self) -> List[TrainingExample]:
        return [TrainingExample.from_dict(e) for e in self._examples]

    async def save_training_examples(self, examples: List[TrainingExample]) -> bool:
        self._examples = [e.to_dict() for e in examples]
        return True

    async def get_model_blob(self) -> Optional[bytes]:
        return self._model_blob

    async def save_model_blob(self, blob: bytes) -> bool:
        self._model_blob = bytes(blob)
        return True


class JsonFileStore(KnowledgeStore):
    """
    Store backed by JSON files in one directory.

    File I/O runs in a worker thread so the event loop is not blocked.
    Writes go to a temporary file first and are then renamed into place.
    """

    KNOWLEDGE_FILE = "knowledge.json"
    FEEDBACK_FILE = "feedback.json"
    HISTORY_FILE = "feedback_history.json"
    EXAMPLES_FILE = "training_examples.json"
    MODEL_FILE = "model.bin"

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir or config.DATA_DIR)

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _read_json(self, name: str) -> Optional[Any]:
        path = self._path(name)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)

    def _write_bytes(self, name: str, data: bytes):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

    def _write_json(self, name: str, payload: Any):
        self._write_bytes(name, json.dumps(payload, indent=2).encode("utf-8"))

    async def _load(self, name: str) -> Optional[Any]:
        try:
            return await asyncio.to_thread(self._read_json, name)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {name}: {e}")
            return None

    async def _save(self, name: str, payload: Any) -> bool:
        try:
            await asyncio.to_thread(self._write_json, name, payload)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write {name}: {e}")
            return False

    async def load_knowledge_base(self) -> KnowledgeBase:
        data = await self._load(self.KNOWLEDGE_FILE)
        if data is None:
            logger.info("No stored knowledge base, using defaults")
        return KnowledgeBase.from_dict(data)

    async def save_knowledge_base(self, knowledge_base: KnowledgeBase) -> bool:
        stored = await self._load(self.KNOWLEDGE_FILE)
        stored_version = int(stored["version"]) if stored and "version" in stored else None
        if not self._accepts_version(stored_version, knowledge_base):
            return False
        return await self._save(self.KNOWLEDGE_FILE, knowledge_base.to_dict())

    async def get_feedback_entries(self) -> List[FeedbackEntry]:
        return entries_from_dicts(await self._load(self.FEEDBACK_FILE) or [])

    async def save_feedback_entries(self, entries: List[FeedbackEntry]) -> bool:
        return await self._save(self.FEEDBACK_FILE, [e.to_dict() for e in entries])

    async def get_feedback_history(self) -> List[FeedbackEntry]:
        return entries_from_dicts(await self._load(self.HISTORY_FILE) or [])

    async def append_feedback_history(self, entry: FeedbackEntry) -> bool:
        history = await self._load(self.HISTORY_FILE) or []
        history.append(entry.to_dict())
        return await self._save(self.HISTORY_FILE, history)

    async def get_training_examples(self) -> List[TrainingExample]:
        return [TrainingExample.from_dict(e) for e in await self._load(self.EXAMPLES_FILE) or []]

    async def save_training_examples(self, examples: List[TrainingExample]) -> bool:
        return await self._save(self.EXAMPLES_FILE, [e.to_dict() for e in examples])

    async def get_model_blob(self) -> Optional[bytes]:
        path = self._path(self.MODEL_FILE)
        try:
            return await asyncio.to_thread(path.read_bytes) if path.exists() else None
        except OSError as e:
            logger.error(f"Failed to read model blob: {e}")
            return None

    async def save_model_blob(self, blob: bytes) -> bool:
        try:
            await asyncio.to_thread(self._write_bytes, self.MODEL_FILE, blob)
            return True
        except OSError as e:
            logger.error(f"Failed to write model blob: {e}")
            return False


def create_store(mode: Optional[str] = None, data_dir: Optional[str] = None) -> KnowledgeStore:
    """Create the store selected by ``config.STORAGE_MODE``."""
    mode = mode or config.STORAGE_MODE
    if not config.validate_storage_mode(mode):
        raise ValueError(f"Unknown storage mode '{mode}'")
    if mode == "file":
        return JsonFileStore(data_dir)
    return InMemoryStore()
