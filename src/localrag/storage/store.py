"""Persistent key-value storage for units, document manifests and cached answers."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.models.Collection import Collection

from localrag.errors import StorageError
from localrag.metrics.observability import get_logger
from localrag.models import Answer, AnswerCacheEntry, DocumentManifest, RetrievableUnit

# Manifests and cache entries are pure key-value records; chroma still wants a vector per id.
_PLACEHOLDER_VECTOR = [0.0]
_PAGE_SIZE = 1000


class KnowledgeStore(Protocol):
    """Key-value object store consumed by the pipeline controller."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def put_units(self, units: Sequence[RetrievableUnit]) -> None: ...

    def get_units_by_document(self, document_id: str) -> Sequence[RetrievableUnit]: ...

    def delete_units_by_document(self, document_id: str) -> int: ...

    def all_units(self) -> Sequence[RetrievableUnit]: ...

    def count_units(self) -> int: ...

    def put_manifest(self, manifest: DocumentManifest) -> None: ...

    def get_manifest(self, document_id: str) -> DocumentManifest | None: ...

    def delete_manifest(self, document_id: str) -> None: ...

    def all_manifests(self) -> Sequence[DocumentManifest]: ...

    def put_cache_entry(self, entry: AnswerCacheEntry) -> None: ...

    def get_cache_entry(self, normalized_query: str) -> AnswerCacheEntry | None: ...

    def delete_cache_entries(self, normalized_queries: Iterable[str]) -> None: ...

    def all_cache_entries(self) -> Sequence[AnswerCacheEntry]: ...

    def count_cache_entries(self) -> int: ...

    def clear(self) -> None: ...


class ChromaKnowledgeStore:
    """Chroma-backed store using one collection each for units, manifests and the answer cache."""

    def __init__(
        self,
        collection_prefix: str = "localrag",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        self._prefix = collection_prefix
        self._client = client
        self._persist_directory = persist_directory
        self._units: Collection | None = None
        self._manifests: Collection | None = None
        self._cache: Collection | None = None
        self._logger = get_logger("storage")

    def open(self) -> None:
        try:
            if self._client is None:
                if self._persist_directory is not None:
                    self._client = chromadb.PersistentClient(path=str(self._persist_directory))
                else:
                    self._client = chromadb.EphemeralClient()
            self._open_collections()
        except Exception as exc:
            raise StorageError(f"Failed to initialize storage: {exc}") from exc
        self._logger.info("storage.open", prefix=self._prefix, persist_directory=str(self._persist_directory))

    def close(self) -> None:
        self._units = self._manifests = self._cache = None

    def _open_collections(self) -> None:
        assert self._client is not None
        self._units = self._client.get_or_create_collection(name=f"{self._prefix}-units", embedding_function=None)
        self._manifests = self._client.get_or_create_collection(
            name=f"{self._prefix}-manifests", embedding_function=None
        )
        self._cache = self._client.get_or_create_collection(name=f"{self._prefix}-cache", embedding_function=None)

    def put_units(self, units: Sequence[RetrievableUnit]) -> None:
        if not units:
            return
        missing = [unit.unit_id for unit in units if unit.embedding is None]
        if missing:
            raise StorageError(f"Units must be embedded before persisting: {missing[:3]}")
        collection = self._collection(self._units)
        with self._guard("put_units"):
            collection.upsert(
                ids=[unit.unit_id for unit in units],
                documents=[unit.text for unit in units],
                embeddings=[list(unit.embedding or ()) for unit in units],
                metadatas=[self._serialize_unit(unit) for unit in units],
            )

    def get_units_by_document(self, document_id: str) -> Sequence[RetrievableUnit]:
        collection = self._collection(self._units)
        with self._guard("get_units_by_document"):
            batch = collection.get(
                where={"document_id": document_id},
                include=["documents", "metadatas", "embeddings"],
            )
        return self._deserialize_units(batch)

    def delete_units_by_document(self, document_id: str) -> int:
        collection = self._collection(self._units)
        with self._guard("delete_units_by_document"):
            existing = collection.get(where={"document_id": document_id}, include=[])
            ids = list(existing.get("ids") or [])
            if ids:
                collection.delete(ids=ids)
        return len(ids)

    def all_units(self) -> Sequence[RetrievableUnit]:
        collection = self._collection(self._units)
        units: List[RetrievableUnit] = []
        offset = 0
        with self._guard("all_units"):
            while True:
                batch = collection.get(
                    include=["documents", "metadatas", "embeddings"],
                    limit=_PAGE_SIZE,
                    offset=offset,
                )
                page = self._deserialize_units(batch)
                units.extend(page)
                if len(page) < _PAGE_SIZE:
                    break
                offset += _PAGE_SIZE
        units.sort(key=lambda unit: (unit.document_id, int(unit.metadata.get("chunk_index", 0))))
        return units

    def count_units(self) -> int:
        collection = self._collection(self._units)
        with self._guard("count_units"):
            return int(collection.count())

    def put_manifest(self, manifest: DocumentManifest) -> None:
        collection = self._collection(self._manifests)
        with self._guard("put_manifest"):
            collection.upsert(
                ids=[manifest.document_id],
                documents=[manifest.document_id],
                embeddings=[_PLACEHOLDER_VECTOR],
                metadatas=[
                    {
                        "content_checksum": manifest.content_checksum,
                        "version_label": manifest.version_label,
                        "updated_at": float(manifest.updated_at),
                        "unit_count": int(manifest.unit_count),
                    }
                ],
            )

    def get_manifest(self, document_id: str) -> DocumentManifest | None:
        collection = self._collection(self._manifests)
        with self._guard("get_manifest"):
            batch = collection.get(ids=[document_id], include=["metadatas"])
        manifests = self._deserialize_manifests(batch)
        return manifests[0] if manifests else None

    def delete_manifest(self, document_id: str) -> None:
        collection = self._collection(self._manifests)
        with self._guard("delete_manifest"):
            collection.delete(ids=[document_id])

    def all_manifests(self) -> Sequence[DocumentManifest]:
        collection = self._collection(self._manifests)
        with self._guard("all_manifests"):
            batch = collection.get(include=["metadatas"])
        return self._deserialize_manifests(batch)

    def put_cache_entry(self, entry: AnswerCacheEntry) -> None:
        collection = self._collection(self._cache)
        with self._guard("put_cache_entry"):
            collection.upsert(
                ids=[self._cache_key(entry.normalized_query)],
                documents=[json.dumps(entry.answer.to_dict(), default=str)],
                embeddings=[_PLACEHOLDER_VECTOR],
                metadatas=[{"normalized_query": entry.normalized_query, "created_at": float(entry.created_at)}],
            )

    def get_cache_entry(self, normalized_query: str) -> AnswerCacheEntry | None:
        collection = self._collection(self._cache)
        with self._guard("get_cache_entry"):
            batch = collection.get(ids=[self._cache_key(normalized_query)], include=["documents", "metadatas"])
        entries = self._deserialize_cache_entries(batch)
        return entries[0] if entries else None

    def delete_cache_entries(self, normalized_queries: Iterable[str]) -> None:
        ids = [self._cache_key(query) for query in normalized_queries]
        if not ids:
            return
        collection = self._collection(self._cache)
        with self._guard("delete_cache_entries"):
            collection.delete(ids=ids)

    def all_cache_entries(self) -> Sequence[AnswerCacheEntry]:
        collection = self._collection(self._cache)
        with self._guard("all_cache_entries"):
            batch = collection.get(include=["documents", "metadatas"])
        return self._deserialize_cache_entries(batch)

    def count_cache_entries(self) -> int:
        collection = self._collection(self._cache)
        with self._guard("count_cache_entries"):
            return int(collection.count())

    def clear(self) -> None:
        if self._client is None or self._units is None:
            raise StorageError("Database not initialized")
        with self._guard("clear"):
            for suffix in ("units", "manifests", "cache"):
                name = f"{self._prefix}-{suffix}"
                try:
                    self._client.delete_collection(name)
                except Exception:  # pragma: no cover - collection already gone
                    self._logger.debug("storage.clear_missing_collection", collection=name)
            self._open_collections()

    def _collection(self, collection: Collection | None) -> Collection:
        if collection is None:
            raise StorageError("Database not initialized")
        return collection

    def _guard(self, operation: str) -> "_StorageGuard":
        return _StorageGuard(operation, self._logger)

    @staticmethod
    def _cache_key(normalized_query: str) -> str:
        return hashlib.sha256(normalized_query.encode("utf-8")).hexdigest()

    def _serialize_unit(self, unit: RetrievableUnit) -> MutableMapping[str, object]:
        return {
            "document_id": unit.document_id,
            "origin_label": unit.origin_label,
            "chunk_index": int(unit.metadata.get("chunk_index", 0)),
            "unit_metadata": self._dumps(unit.metadata),
        }

    def _deserialize_units(self, batch: Mapping[str, Any]) -> List[RetrievableUnit]:
        ids = list(batch.get("ids") or [])
        documents = self._field(batch, "documents", len(ids))
        metadatas = self._field(batch, "metadatas", len(ids))
        embeddings = self._field(batch, "embeddings", len(ids))
        units: List[RetrievableUnit] = []
        for unit_id, document, metadata, embedding in zip(ids, documents, metadatas, embeddings):
            metadata = metadata or {}
            units.append(
                RetrievableUnit(
                    unit_id=str(unit_id),
                    document_id=str(metadata.get("document_id", "")),
                    origin_label=str(metadata.get("origin_label", "")),
                    text=document or "",
                    embedding=tuple(float(value) for value in embedding) if embedding is not None else None,
                    metadata=self._loads_dict(metadata.get("unit_metadata")),
                ),
            )
        return units

    def _deserialize_manifests(self, batch: Mapping[str, Any]) -> List[DocumentManifest]:
        ids = list(batch.get("ids") or [])
        metadatas = self._field(batch, "metadatas", len(ids))
        return [
            DocumentManifest(
                document_id=str(document_id),
                content_checksum=str(metadata.get("content_checksum", "")),
                version_label=str(metadata.get("version_label", "")),
                updated_at=float(metadata.get("updated_at", 0.0)),
                unit_count=int(metadata.get("unit_count", 0)),
            )
            for document_id, metadata in zip(ids, metadatas)
            if metadata
        ]

    def _deserialize_cache_entries(self, batch: Mapping[str, Any]) -> List[AnswerCacheEntry]:
        ids = list(batch.get("ids") or [])
        documents = self._field(batch, "documents", len(ids))
        metadatas = self._field(batch, "metadatas", len(ids))
        entries: List[AnswerCacheEntry] = []
        for document, metadata in zip(documents, metadatas):
            if not document or not metadata:
                continue
            entries.append(
                AnswerCacheEntry(
                    normalized_query=str(metadata.get("normalized_query", "")),
                    answer=Answer.from_dict(json.loads(document)),
                    created_at=float(metadata.get("created_at", 0.0)),
                ),
            )
        return entries

    @staticmethod
    def _field(batch: Mapping[str, Any], name: str, length: int) -> Sequence[Any]:
        # chroma may hand back numpy arrays, whose truth value is ambiguous
        values = batch.get(name)
        if values is None:
            return [None] * length
        return list(values)

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}


class _StorageGuard:
    """Context manager translating chroma failures into :class:`StorageError`."""

    def __init__(self, operation: str, logger) -> None:
        self._operation = operation
        self._logger = logger

    def __enter__(self) -> "_StorageGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        if exc is None or isinstance(exc, StorageError):
            return False
        self._logger.error("storage.error", operation=self._operation, error=str(exc))
        raise StorageError(f"Storage operation {self._operation} failed: {exc}") from exc
