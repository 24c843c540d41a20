#!/usr/bin/env python3
"""
Strata Loader - Visualization Dataset Builder (v1.0.0)

Loads the datasets written by the repository evolution analyzer and turns
them into the three structures the visualization frontend works from:
- Directory tree with stable integer identifiers (Treemap)
- Repository metadata with validated directory statistics (Overview)
- Day x directory activity matrix with top-3 authors/files (Timeline Heatmap)

Input datasets, relative to a dataset directory or base URL:
- file_lifecycle.json
- networks/author_network.json
- metadata/file_index.json
- aggregations/directory_stats.json

The four documents are fetched concurrently; everything after the fetch is a
single synchronous pass. Nothing is written back to disk.

Version: 1.0.0
"""

import json
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone, tzinfo
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
)
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
import httpx
import jsonschema
import psutil
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm

just_fix_windows_console()

# Version information
VERSION = "1.0.0"

TOP_K = 3
NO_EXTENSION = "no-extension"
ROOT_NAME = "root"

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================


class StrataLoaderError(Exception):
    """Base class for every error raised while loading a dataset"""


class DatasetLoadError(StrataLoaderError):
    """
    A required dataset could not be fetched, decoded or validated.
    Always fatal: the whole load is aborted.
    """

    def __init__(self, resource: str, reason: Any):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Failed to load {resource}: {reason}")


class EmptyHistoryError(StrataLoaderError):
    """The lifecycle dataset holds no change events, so there is no date range"""


class ConfigurationError(StrataLoaderError):
    """Invalid configuration file or setting"""


# ============================================================================
# DATASET REGISTRY & SCHEMAS
# ============================================================================


@dataclass(frozen=True)
class DatasetDefinition:
    name: str
    path: str
    type: str
    description: str


DATASET_REGISTRY: Dict[str, DatasetDefinition] = {
    "file_lifecycle": DatasetDefinition(
        name="File Lifecycle",
        path="file_lifecycle.json",
        type="metadata",
        description="Complete file lifecycle event stream",
    ),
    "author_network": DatasetDefinition(
        name="Author Network",
        path="networks/author_network.json",
        type="network",
        description="Author collaboration network",
    ),
    "file_index": DatasetDefinition(
        name="File Index",
        path="metadata/file_index.json",
        type="metadata",
        description="File-level metadata with primary authors and statistics",
    ),
    "directory_stats": DatasetDefinition(
        name="Directory Stats",
        path="aggregations/directory_stats.json",
        type="hierarchy",
        description="Pre-aggregated directory-level statistics",
    ),
}

# Fetch order
REQUIRED_DATASETS = ("file_lifecycle", "author_network", "file_index", "directory_stats")

# Only the fields the pipeline actually reads are constrained.
DATASET_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "file_lifecycle": {
        "type": "object",
        "required": ["files", "repository_path", "generated_at", "total_commits"],
        "properties": {
            "repository_path": {"type": "string"},
            "generated_at": {"type": "string"},
            "total_commits": {"type": "integer"},
            "total_files": {"type": "integer"},
            "files": {
                "type": "object",
                "additionalProperties": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": [
                            "commit_hash",
                            "timestamp",
                            "operation",
                            "author_name",
                        ],
                        "properties": {
                            "commit_hash": {"type": "string"},
                            "timestamp": {"type": "integer"},
                            "operation": {"type": "string"},
                            "author_name": {"type": "string"},
                            "author_email": {"type": "string"},
                            "commit_subject": {"type": "string"},
                        },
                    },
                },
            },
        },
    },
    "author_network": {
        "type": "object",
        "required": ["nodes"],
        "properties": {
            "nodes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["id", "email", "commit_count"],
                    "properties": {
                        "id": {"type": "string"},
                        "email": {"type": "string"},
                        "commit_count": {"type": "integer"},
                        "collaboration_count": {"type": "integer"},
                    },
                },
            }
        },
    },
    "file_index": {
        "type": "object",
        "required": ["files"],
        "properties": {
            "files": {
                "type": "object",
                "additionalProperties": {
                    "type": "object",
                    "properties": {"total_commits": {"type": "integer"}},
                },
            }
        },
    },
    "directory_stats": {
        "type": "object",
        "required": ["directories"],
        "properties": {
            "directories": {
                "type": "object",
                "additionalProperties": {
                    "type": "object",
                    "required": ["path", "total_commits", "activity_score"],
                    "properties": {
                        "path": {"type": "string"},
                        "total_commits": {"type": "integer"},
                        "activity_score": {"type": "number"},
                    },
                },
            }
        },
    },
}


def validate_document(dataset_id: str, document: Any):
    """Raise DatasetLoadError if a decoded document does not match its schema"""
    definition = DATASET_REGISTRY[dataset_id]
    try:
        jsonschema.validate(document, DATASET_SCHEMAS[dataset_id])
    except jsonschema.ValidationError as e:
        location = "/".join(str(part) for part in e.absolute_path) or "<document>"
        raise DatasetLoadError(
            definition.name, f"schema violation at {location}: {e.message}"
        ) from e


def document_section(dataset_id: str, document: Any, key: str, kind: type) -> Any:
    """
    Top-level member `key` of a decoded document, checked against `kind`.

    Covers documents that skipped schema validation.
    """
    name = DATASET_REGISTRY[dataset_id].name
    try:
        section = document[key]
    except (KeyError, TypeError) as e:
        raise DatasetLoadError(name, f"malformed document: missing {key!r}") from e
    if not isinstance(section, kind):
        raise DatasetLoadError(
            name, f"malformed document: {key!r} is not a {kind.__name__}"
        )
    return section


# ============================================================================
# RAW INPUT MODEL
# ============================================================================


class ChangeOperation(str, Enum):
    ADDED = "A"
    MODIFIED = "M"
    DELETED = "D"
    RENAMED = "R"

    @classmethod
    def from_code(cls, code: str) -> "ChangeOperation":
        """
        Map a git status letter to an operation.
        Copies (C), type changes (T) and unknown codes read as MODIFIED.
        """
        try:
            return cls(code)
        except ValueError:
            return cls.MODIFIED


@dataclass(frozen=True)
class RawChangeEvent:
    """One recorded change to one file"""

    commit_hash: str
    timestamp: int
    operation: ChangeOperation
    author_name: str
    author_email: str = ""
    commit_subject: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawChangeEvent":
        return cls(
            commit_hash=data["commit_hash"],
            timestamp=int(data["timestamp"]),
            operation=ChangeOperation.from_code(data["operation"]),
            author_name=data["author_name"],
            author_email=data.get("author_email", ""),
            commit_subject=data.get("commit_subject", ""),
        )


@dataclass(frozen=True)
class LifecycleDocument:
    """
    Decoded file_lifecycle.json.

    `files` keeps the document's key order; tree identifiers and top-k
    tie-breaks depend on it.
    """

    repository_path: str
    generated_at: str
    total_commits: int
    total_changes: int
    total_files: Optional[int]
    files: Dict[str, List[RawChangeEvent]]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleDocument":
        name = DATASET_REGISTRY["file_lifecycle"].name
        try:
            files = {
                file_path: [RawChangeEvent.from_dict(event) for event in events]
                for file_path, events in data["files"].items()
            }
            return cls(
                repository_path=data["repository_path"],
                generated_at=data["generated_at"],
                total_commits=data["total_commits"],
                total_changes=data.get("total_changes", 0),
                total_files=data.get("total_files"),
                files=files,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DatasetLoadError(name, f"malformed document: {e!r}") from e

    @property
    def event_count(self) -> int:
        return sum(len(events) for events in self.files.values())


# ============================================================================
# DIRECTORY TREE
# ============================================================================


class NodeKind(str, Enum):
    DIRECTORY = "directory"
    FILE = "file"


@dataclass(frozen=True, eq=False)
class DirectoryTreeNode:
    id: int
    name: str
    path: str
    kind: NodeKind
    children: List["DirectoryTreeNode"] = field(default_factory=list)

    @property
    def is_directory(self) -> bool:
        return self.kind is NodeKind.DIRECTORY

    def iter_nodes(self) -> Iterator["DirectoryTreeNode"]:
        """Pre-order walk of this node and all descendants"""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def _node_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.kind.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the subtree; files carry no `children` key"""
        result = self._node_dict()
        stack = [(self, result)]
        while stack:
            node, data = stack.pop()
            if not node.is_directory:
                continue
            data["children"] = []
            for child in node.children:
                child_data = child._node_dict()
                data["children"].append(child_data)
                stack.append((child, child_data))
        return result


def join_path(parent_path: str, name: str) -> str:
    return f"{parent_path}/{name}" if parent_path else name


class DirectoryTreeBuilder:
    """
    Rebuild the directory hierarchy from flat file paths.

    Root is created with id 0; every other node takes the next value of one
    counter starting at 1, in creation order. Directories are matched by
    (parent, name), so a file and a directory may share a name. The walk is
    an explicit loop over path segments.

    A builder is single-use: call build() once and keep the result.
    """

    def __init__(self):
        self.root = DirectoryTreeNode(
            id=0, name=ROOT_NAME, path="", kind=NodeKind.DIRECTORY
        )
        self._next_id = 1
        self._directories: Dict[Tuple[int, str], DirectoryTreeNode] = {}
        self._index: Dict[str, int] = {"": 0}
        self.file_count = 0

    def _take_id(self) -> int:
        node_id = self._next_id
        self._next_id += 1
        return node_id

    def _get_or_create_dir(self, parts: List[str]) -> DirectoryTreeNode:
        parent = self.root
        for name in parts:
            key = (parent.id, name)
            child = self._directories.get(key)
            if child is None:
                child = DirectoryTreeNode(
                    id=self._take_id(),
                    name=name,
                    path=join_path(parent.path, name),
                    kind=NodeKind.DIRECTORY,
                )
                parent.children.append(child)
                self._directories[key] = child
                # First writer wins: "/x" style paths would otherwise shadow root
                self._index.setdefault(child.path, child.id)
            parent = child
        return parent

    def add_file(self, file_path: str) -> DirectoryTreeNode:
        *dir_parts, file_name = file_path.split("/")
        parent = self._get_or_create_dir(dir_parts)
        leaf = DirectoryTreeNode(
            id=self._take_id(), name=file_name, path=file_path, kind=NodeKind.FILE
        )
        parent.children.append(leaf)
        self.file_count += 1
        return leaf

    @property
    def index(self) -> Mapping[str, int]:
        """Read-only directory path -> node id lookup"""
        return MappingProxyType(self._index)

    @property
    def directory_count(self) -> int:
        return len(self._directories)

    def build(
        self, file_paths: Iterable[str]
    ) -> Tuple[DirectoryTreeNode, Mapping[str, int]]:
        for file_path in file_paths:
            self.add_file(file_path)
        return self.root, self.index


def build_directory_tree(
    file_paths: Iterable[str],
) -> Tuple[DirectoryTreeNode, Mapping[str, int]]:
    return DirectoryTreeBuilder().build(file_paths)


# ============================================================================
# REPOSITORY METADATA
# ============================================================================


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class AuthorSummary:
    name: str
    email: str
    commit_count: int


@dataclass(frozen=True)
class FileTypeCount:
    extension: str
    count: int


@dataclass(frozen=True)
class DirectoryStat:
    path: str
    total_commits: int
    activity_score: float


@dataclass(frozen=True)
class RepositoryMetadata:
    repository_name: str
    generation_date: str
    date_range: DateRange
    total_commits: int
    total_files: int
    total_authors: int
    authors: Tuple[AuthorSummary, ...]
    file_types: Tuple[FileTypeCount, ...]
    directory_stats: Tuple[DirectoryStat, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository_name": self.repository_name,
            "generation_date": self.generation_date,
            "date_range": self.date_range.to_dict(),
            "stats": {
                "total_commits": self.total_commits,
                "total_files": self.total_files,
                "total_authors": self.total_authors,
            },
            "authors": [
                {
                    "name": author.name,
                    "email": author.email,
                    "commit_count": author.commit_count,
                }
                for author in self.authors
            ],
            "file_types": [
                {"extension": ft.extension, "count": ft.count}
                for ft in self.file_types
            ],
            "directory_stats": [
                {
                    "path": stat.path,
                    "total_commits": stat.total_commits,
                    "activity_score": stat.activity_score,
                }
                for stat in self.directory_stats
            ],
        }


def file_extension(file_path: str) -> str:
    """
    Extension of the final path segment, without the dot.

    Dotfiles (".gitignore"), names without a dot and names ending in a dot
    all report NO_EXTENSION.
    """
    file_name = file_path.split("/")[-1]
    dot = file_name.rfind(".")
    # A trailing dot would leave an empty "substring after the last dot";
    # bucket it with the extensionless names instead of reporting "".
    if dot <= 0 or dot == len(file_name) - 1:
        return NO_EXTENSION
    return file_name[dot + 1 :]


def repository_display_name(repository_path: str) -> str:
    name = repository_path.replace("\\", "/").split("/")[-1]
    return name or "Repository"


class RepositoryMetadataAggregator:
    """
    Repository-wide summary facts.

    Directory statistics are cross-checked against the tree's directory
    index; entries for paths the tree does not contain are dropped.
    """

    def __init__(self, directory_index: Mapping[str, int]):
        self.directory_index = directory_index
        self.dropped_directories = 0

    def date_range(self, files: Mapping[str, List[RawChangeEvent]]) -> DateRange:
        timestamps = [event.timestamp for events in files.values() for event in events]
        if not timestamps:
            raise EmptyHistoryError(
                "Lifecycle data contains no change events; cannot derive a date range"
            )
        return DateRange(
            start=datetime.fromtimestamp(min(timestamps), timezone.utc),
            end=datetime.fromtimestamp(max(timestamps), timezone.utc),
        )

    def file_types(self, file_paths: Iterable[str]) -> Tuple[FileTypeCount, ...]:
        counts = Counter(file_extension(path) for path in file_paths)
        # Counter keeps first-seen order, most_common() is stable on ties
        return tuple(
            FileTypeCount(extension=ext, count=count)
            for ext, count in counts.most_common()
        )

    def directory_stats(
        self, directories: Mapping[str, Dict[str, Any]]
    ) -> Tuple[DirectoryStat, ...]:
        stats = []
        try:
            for entry in directories.values():
                if entry["path"] not in self.directory_index:
                    self.dropped_directories += 1
                    logger.debug(
                        "Dropping stats for unknown directory %r", entry["path"]
                    )
                    continue
                stats.append(
                    DirectoryStat(
                        path=entry["path"],
                        total_commits=entry["total_commits"],
                        activity_score=entry["activity_score"],
                    )
                )
        except (KeyError, TypeError, AttributeError) as e:
            raise DatasetLoadError(
                DATASET_REGISTRY["directory_stats"].name, f"malformed document: {e!r}"
            ) from e
        return tuple(stats)

    @staticmethod
    def authors(nodes: Iterable[Dict[str, Any]]) -> Tuple[AuthorSummary, ...]:
        try:
            return tuple(
                AuthorSummary(
                    name=node["id"],
                    email=node["email"],
                    commit_count=node["commit_count"],
                )
                for node in nodes
            )
        except (KeyError, TypeError) as e:
            raise DatasetLoadError(
                DATASET_REGISTRY["author_network"].name, f"malformed document: {e!r}"
            ) from e

    def aggregate(
        self,
        history: LifecycleDocument,
        author_nodes: List[Dict[str, Any]],
        file_index_paths: Iterable[str],
        directories: Mapping[str, Dict[str, Any]],
    ) -> RepositoryMetadata:
        authors = self.authors(author_nodes)
        total_files = (
            history.total_files
            if history.total_files is not None
            else len(history.files)
        )
        return RepositoryMetadata(
            repository_name=repository_display_name(history.repository_path),
            generation_date=history.generated_at,
            date_range=self.date_range(history.files),
            total_commits=history.total_commits,
            total_files=total_files,
            total_authors=len(authors),
            authors=authors,
            file_types=self.file_types(file_index_paths),
            directory_stats=self.directory_stats(directories),
        )


# ============================================================================
# ACTIVITY MATRIX
# ============================================================================


@dataclass(frozen=True)
class ActivityBucket:
    """Summary of all events under one directory on one calendar day"""

    date: str
    directory_id: int
    added: int
    modified: int
    deleted: int
    unique_authors: int
    unique_commits: int
    top_authors: Tuple[str, ...]
    top_files: Tuple[str, ...]

    @property
    def total_events(self) -> int:
        return self.added + self.modified + self.deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "d": self.date,
            "id": self.directory_id,
            "a": self.added,
            "m": self.modified,
            "del": self.deleted,
            "au": self.unique_authors,
            "c": self.unique_commits,
            "tc": list(self.top_authors),
            "tf": list(self.top_files),
        }


class ActivityAggregator:
    """
    Sparse (day, directory) activity matrix.

    Buckets are created on first event and kept in first-seen order; they
    are not sorted. Renames, copies and type changes count as modifications.
    Day keys are calendar dates in `tz` (UTC unless configured otherwise).
    """

    def __init__(
        self,
        directory_index: Mapping[str, int],
        tz: tzinfo = timezone.utc,
        top_k: int = TOP_K,
    ):
        self.directory_index = directory_index
        self.tz = tz
        self.top_k = top_k
        self.buckets: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.skipped_files = 0

    def date_key(self, timestamp: int) -> str:
        return datetime.fromtimestamp(timestamp, self.tz).strftime("%Y-%m-%d")

    def process_file(self, file_path: str, events: List[RawChangeEvent]):
        """Fold one file's events into the matrix"""
        *dir_parts, file_name = file_path.split("/")
        dir_id = self.directory_index.get("/".join(dir_parts))
        if dir_id is None:
            self.skipped_files += 1
            logger.debug(
                "No directory id for %r, skipping %d events", file_path, len(events)
            )
            return

        for event in events:
            key = (self.date_key(event.timestamp), dir_id)
            bucket = self.buckets.get(key)
            if bucket is None:
                bucket = self.buckets[key] = {
                    "added": 0,
                    "modified": 0,
                    "deleted": 0,
                    "authors": Counter(),
                    "files": Counter(),
                    "commits": set(),
                }

            bucket["authors"][event.author_name] += 1
            bucket["files"][file_name] += 1
            bucket["commits"].add(event.commit_hash)

            if event.operation is ChangeOperation.ADDED:
                bucket["added"] += 1
            elif event.operation is ChangeOperation.DELETED:
                bucket["deleted"] += 1
            else:
                bucket["modified"] += 1

    def finalize(self) -> Tuple[ActivityBucket, ...]:
        """Freeze the buckets and drop the per-bucket counters"""
        activity = tuple(
            ActivityBucket(
                date=date,
                directory_id=dir_id,
                added=bucket["added"],
                modified=bucket["modified"],
                deleted=bucket["deleted"],
                unique_authors=len(bucket["authors"]),
                unique_commits=len(bucket["commits"]),
                top_authors=tuple(
                    name for name, _ in bucket["authors"].most_common(self.top_k)
                ),
                top_files=tuple(
                    name for name, _ in bucket["files"].most_common(self.top_k)
                ),
            )
            for (date, dir_id), bucket in self.buckets.items()
        )
        self.buckets = {}
        return activity

    def aggregate(
        self, files: Mapping[str, List[RawChangeEvent]]
    ) -> Tuple[ActivityBucket, ...]:
        for file_path, events in files.items():
            self.process_file(file_path, events)
        return self.finalize()


# ============================================================================
# TRANSPORTS
# ============================================================================


class DatasetTransport(ABC):
    """Fetches and decodes one dataset document"""

    @abstractmethod
    def fetch_json(self, definition: DatasetDefinition) -> Any:
        """Return the decoded document or raise DatasetLoadError"""

    @abstractmethod
    def describe(self) -> str:
        pass


class LocalDatasetTransport(DatasetTransport):
    """Reads datasets from an analyzer output directory"""

    def __init__(self, base_dir: str):
        self.base_dir = os.path.abspath(base_dir)

    def describe(self) -> str:
        return self.base_dir

    def fetch_json(self, definition: DatasetDefinition) -> Any:
        path = os.path.join(self.base_dir, *definition.path.split("/"))
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise DatasetLoadError(definition.name, f"file not found: {path}") from None
        except ValueError as e:
            raise DatasetLoadError(definition.name, f"invalid JSON: {e}") from e
        except OSError as e:
            raise DatasetLoadError(definition.name, e) from e


class HttpDatasetTransport(DatasetTransport):
    """
    Fetches datasets over HTTP(S) relative to a base URL.

    A caller-supplied httpx.Client is shared across the concurrent fetches;
    without one, each fetch opens its own short-lived client.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client

    def describe(self) -> str:
        return self.base_url

    def _get(self, url: str) -> httpx.Response:
        if self.client is not None:
            return self.client.get(url, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.get(url)

    def fetch_json(self, definition: DatasetDefinition) -> Any:
        url = f"{self.base_url}/{definition.path}"
        try:
            response = self._get(url)
        except httpx.HTTPError as e:
            raise DatasetLoadError(definition.name, e) from e

        if not response.is_success:
            raise DatasetLoadError(definition.name, response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise DatasetLoadError(definition.name, f"invalid JSON: {e}") from e


def transport_for(source: str, timeout: float = 30.0) -> DatasetTransport:
    if source.startswith(("http://", "https://")):
        return HttpDatasetTransport(source, timeout=timeout)
    return LocalDatasetTransport(source)


# ============================================================================
# MONITORING & METRICS
# ============================================================================


class MemoryMonitor:
    """Track resident memory between pipeline phases and enforce a limit"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0

    def check_memory(self) -> float:
        """Current RSS in MB; raises MemoryError above the limit"""
        memory_mb = psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)

        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )
        return memory_mb

    def get_peak(self) -> float:
        return self.peak_mb


@dataclass
class LoadMetrics:
    """Timings and sizes for one load"""

    fetch_time: float = 0.0
    tree_time: float = 0.0
    metadata_time: float = 0.0
    activity_time: float = 0.0
    total_time: float = 0.0
    files: int = 0
    events: int = 0
    directories: int = 0
    buckets: int = 0
    dropped_directory_stats: int = 0
    skipped_files: int = 0
    memory_peak_mb: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timings_seconds": {
                "fetch": round(self.fetch_time, 3),
                "tree": round(self.tree_time, 3),
                "metadata": round(self.metadata_time, 3),
                "activity": round(self.activity_time, 3),
                "total": round(self.total_time, 3),
            },
            "files": self.files,
            "events": self.events,
            "directories": self.directories,
            "buckets": self.buckets,
            "dropped_directory_stats": self.dropped_directory_stats,
            "skipped_files": self.skipped_files,
            "memory_peak_mb": round(self.memory_peak_mb, 2),
        }


# ============================================================================
# PIPELINE
# ============================================================================


class LoadPhase(str, Enum):
    METADATA = "metadata"
    TREE = "tree"
    ACTIVITY = "activity"
    COMPLETE = "complete"


@dataclass(frozen=True)
class LoadProgress:
    loaded: int
    total: int
    phase: LoadPhase


ProgressCallback = Callable[[LoadProgress], None]


@dataclass(frozen=True)
class OptimizedDataset:
    metadata: RepositoryMetadata
    tree: DirectoryTreeNode
    activity: Tuple[ActivityBucket, ...]
    directory_index: Mapping[str, int]
    metrics: LoadMetrics = field(default_factory=LoadMetrics, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "tree": self.tree.to_dict(),
            "activity": [bucket.to_dict() for bucket in self.activity],
        }


class DatasetLoader:
    """
    Fetch the four analyzer datasets and build the visualization dataset.

    The loader keeps no state between calls; construct one per source (or
    share it) and call load() as often as needed. Progress is reported as
    (0, metadata) before fetching, (2, tree) after the fetch join,
    (3, activity) before activity aggregation and (4, complete) at the end.
    """

    def __init__(
        self,
        transport: DatasetTransport,
        tz: tzinfo = timezone.utc,
        max_workers: int = 4,
        validate: bool = True,
        memory_limit_mb: Optional[float] = None,
    ):
        self.transport = transport
        self.tz = tz
        self.max_workers = max_workers
        self.validate = validate
        self.memory_limit_mb = memory_limit_mb

    @staticmethod
    def _notify(
        on_progress: Optional[ProgressCallback], loaded: int, phase: LoadPhase
    ):
        if on_progress is None:
            return
        try:
            on_progress(LoadProgress(loaded=loaded, total=4, phase=phase))
        except Exception as e:
            logger.warning("Progress callback failed at %s: %s", phase.value, e)

    def _fetch_one(self, dataset_id: str) -> Any:
        document = self.transport.fetch_json(DATASET_REGISTRY[dataset_id])
        if self.validate:
            validate_document(dataset_id, document)
        return document

    def fetch_all(self) -> Dict[str, Any]:
        """Fetch every required dataset concurrently; the first failure aborts"""
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                dataset_id: pool.submit(self._fetch_one, dataset_id)
                for dataset_id in REQUIRED_DATASETS
            }
            return {
                dataset_id: future.result() for dataset_id, future in futures.items()
            }

    def load(self, on_progress: Optional[ProgressCallback] = None) -> OptimizedDataset:
        start_time = time.time()
        self._notify(on_progress, 0, LoadPhase.METADATA)

        logger.debug("Fetching datasets from %s", self.transport.describe())
        documents = self.fetch_all()
        fetch_time = time.time() - start_time

        self._notify(on_progress, 2, LoadPhase.TREE)
        dataset = self.process_raw_data(
            documents["file_lifecycle"],
            documents["author_network"],
            documents["file_index"],
            documents["directory_stats"],
            on_progress=on_progress,
        )

        dataset.metrics.fetch_time = fetch_time
        dataset.metrics.total_time = time.time() - start_time
        logger.info("Dataset loaded in %.2fs", dataset.metrics.total_time)

        self._notify(on_progress, 4, LoadPhase.COMPLETE)
        return dataset

    def process_raw_data(
        self,
        lifecycle: Dict[str, Any],
        author_network: Dict[str, Any],
        file_index: Dict[str, Any],
        directory_stats: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> OptimizedDataset:
        """
        Build the dataset from already-decoded documents.

        The tree is built first because metadata filtering and activity
        routing both need its directory index.
        """
        metrics = LoadMetrics()
        monitor = MemoryMonitor(limit_mb=self.memory_limit_mb)
        history = LifecycleDocument.from_dict(lifecycle)

        # 1. Directory tree
        phase_start = time.time()
        builder = DirectoryTreeBuilder()
        root, index = builder.build(history.files)
        metrics.tree_time = time.time() - phase_start
        monitor.check_memory()

        # 2. Metadata, filtered against the tree
        phase_start = time.time()
        metadata_aggregator = RepositoryMetadataAggregator(index)
        metadata = metadata_aggregator.aggregate(
            history,
            document_section("author_network", author_network, "nodes", list),
            document_section("file_index", file_index, "files", dict).keys(),
            document_section("directory_stats", directory_stats, "directories", dict),
        )
        metrics.metadata_time = time.time() - phase_start
        monitor.check_memory()

        # 3. Activity matrix
        self._notify(on_progress, 3, LoadPhase.ACTIVITY)
        phase_start = time.time()
        activity_aggregator = ActivityAggregator(index, tz=self.tz)
        activity = activity_aggregator.aggregate(history.files)
        metrics.activity_time = time.time() - phase_start
        monitor.check_memory()

        metrics.files = builder.file_count
        metrics.events = history.event_count
        metrics.directories = builder.directory_count
        metrics.buckets = len(activity)
        metrics.dropped_directory_stats = metadata_aggregator.dropped_directories
        metrics.skipped_files = activity_aggregator.skipped_files
        metrics.memory_peak_mb = monitor.get_peak()

        return OptimizedDataset(
            metadata=metadata,
            tree=root,
            activity=activity,
            directory_index=index,
            metrics=metrics,
        )


# ============================================================================
# CONFIGURATION
# ============================================================================


CONFIG_FILE_NAMES = (
    ".strata-loader.yaml",
    ".strata-loader.yml",
    ".strata-loader.json",
)


@dataclass
class LoaderSettings:
    source: Optional[str] = None
    timezone: str = "UTC"
    max_workers: int = 4
    timeout: float = 30.0
    validate: bool = True
    memory_limit: Optional[float] = None


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file"""
    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()
    if file_ext not in (".yaml", ".yml", ".json"):
        raise ConfigurationError(f"Unsupported config file format: {file_ext}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if file_ext == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")
    return data


def find_config_file(search_dirs: Iterable[str]) -> Optional[str]:
    """First .strata-loader.{yaml,yml,json} found in the given directories"""
    for search_dir in search_dirs:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve settings with precedence: CLI > config file > defaults.

    Without an explicit config path, the dataset directory (when the source
    is local) and then the current directory are searched.
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str] = None,
        source: Optional[str] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config: Dict[str, Any] = {}
        self.config_path = config_path

        if config_path:
            self.config = load_config_file(config_path)
        else:
            search_dirs = []
            if source and os.path.isdir(source):
                search_dirs.append(source)
            search_dirs.append(os.getcwd())
            auto_path = find_config_file(search_dirs)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_path = auto_path
                    logger.info("Auto-discovered configuration: %s", auto_path)
                except ConfigurationError as e:
                    logger.warning("Found config file but failed to load: %s", e)

        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default

    def settings(self) -> LoaderSettings:
        defaults = LoaderSettings()
        resolved = {
            f.name: self.get(f.name, getattr(defaults, f.name))
            for f in fields(LoaderSettings)
        }
        return LoaderSettings(**resolved)


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown time zone: {name}") from e


def create_loader(settings: LoaderSettings) -> DatasetLoader:
    if not settings.source:
        raise ConfigurationError("No dataset source configured")
    return DatasetLoader(
        transport_for(settings.source, timeout=settings.timeout),
        tz=resolve_timezone(settings.timezone),
        max_workers=settings.max_workers,
        validate=settings.validate,
        memory_limit_mb=settings.memory_limit,
    )


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console output for the CLI: coloured stage banners (colorama), a load
    progress bar (tqdm) and a closing summary block.
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{separator}")
        print(self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT))
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        print(
            self._colorize(
                f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
            )
        )
        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: int, desc: str = "Loading"
    ) -> Optional[tqdm]:
        if self.quiet:
            return None
        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" datasets",
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} {postfix}",
        )

    def info(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('ℹ️  ', Fore.BLUE)}{message}")

    def warning(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('⚠️  ', Fore.YELLOW + Style.BRIGHT)}{message}")

    def error(self, message: str):
        """Always shown, on stderr"""
        print(
            self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT),
            file=sys.stderr,
        )

    def success(self, message: str):
        if not self.quiet:
            print(self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        elapsed = time.time() - self.start_time
        separator = self._colorize("=" * 70, Fore.CYAN)

        print(f"\n{separator}")
        print(self._colorize("📊 DATASET SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")
        print(f"\n{self._colorize(f'⏱️  Total time: {elapsed:.2f}s', Fore.YELLOW)}")
        print(f"{separator}\n")


def busiest_day(activity: Iterable[ActivityBucket]) -> Optional[Tuple[str, int]]:
    """Date with the most events across all directories (earliest on ties)"""
    per_day = Counter()
    for bucket in activity:
        per_day[bucket.date] += bucket.total_events
    if not per_day:
        return None
    return max(sorted(per_day.items()), key=lambda item: item[1])


def summarize_dataset(dataset: OptimizedDataset) -> Dict[str, Any]:
    metadata = dataset.metadata
    stats = {
        "Repository": metadata.repository_name,
        "Date range": (
            f"{metadata.date_range.start.date()} → {metadata.date_range.end.date()}"
        ),
        "Total commits": f"{metadata.total_commits:,}",
        "Total files": f"{metadata.total_files:,}",
        "Authors": f"{metadata.total_authors:,}",
        "Directories in tree": f"{dataset.metrics.directories:,}",
        "Activity buckets": f"{len(dataset.activity):,}",
    }
    day = busiest_day(dataset.activity)
    if day:
        stats["Busiest day"] = f"{day[0]} ({day[1]:,} changes)"
    if metadata.file_types:
        stats["Top file types"] = ", ".join(
            f"{ft.extension} ({ft.count})" for ft in metadata.file_types[:TOP_K]
        )
    stats["Peak memory"] = f"{dataset.metrics.memory_peak_mb:.1f} MB"
    return stats


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("source", required=False)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--timezone",
    "timezone_name",
    help="Time zone for daily activity buckets (default: UTC)",
)
@click.option("--workers", type=int, help="Concurrent dataset fetches (default: 4)")
@click.option("--timeout", type=float, help="HTTP timeout in seconds (default: 30)")
@click.option(
    "--no-validate",
    is_flag=True,
    default=None,
    help="Skip JSON schema validation of the input datasets",
)
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    default=None,
    help="Print the built dataset as JSON on stdout",
)
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress and debug logging",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
def main(
    source, config, timezone_name, workers, timeout, no_validate, memory_limit, **kwargs
):
    """
    Strata Loader - build the visualization dataset from analyzer output.

    SOURCE is an analyzer output directory or an http(s) base URL serving
    the same layout.
    """
    verbose = bool(kwargs.get("verbose"))
    json_output = bool(kwargs.get("json_output"))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s  %(levelname)-8s %(name)s: %(message)s",
    )

    cli_args = {
        "source": source,
        "timezone": timezone_name,
        "max_workers": workers,
        "timeout": timeout,
        "validate": False if no_validate else None,
        "memory_limit": memory_limit,
    }

    reporter = ProgressReporter(
        quiet=bool(kwargs.get("quiet")) or json_output,
        verbose=verbose,
        use_colors=not kwargs.get("no_color"),
    )

    try:
        resolver = ConfigResolver(cli_args, config, source)
        settings = resolver.settings()

        if not settings.source:
            ctx = click.get_current_context()
            reporter.error("No dataset source given (argument or config 'source')")
            click.echo(ctx.get_help())
            ctx.exit(2)

        loader = create_loader(settings)
        if resolver.config_path:
            reporter.info(f"Configuration: {resolver.config_path}")
        reporter.stage_start("Loading", f"Dataset source: {settings.source}")

        progress_bar = reporter.create_progress_bar(total=len(REQUIRED_DATASETS))

        def on_progress(progress: LoadProgress):
            if progress_bar is not None:
                progress_bar.set_postfix_str(progress.phase.value)
                progress_bar.update(progress.loaded - progress_bar.n)

        try:
            dataset = loader.load(on_progress=on_progress)
        finally:
            if progress_bar is not None:
                progress_bar.close()

        reporter.stage_complete("Loading", dataset.metrics.to_dict())
        if verbose:
            metrics = dataset.metrics
            if metrics.dropped_directory_stats:
                reporter.warning(
                    f"Dropped {metrics.dropped_directory_stats} directory stats "
                    "entries with no matching directory in the tree"
                )
            if metrics.skipped_files:
                reporter.warning(
                    f"Skipped {metrics.skipped_files} files with no indexed directory"
                )

        if json_output:
            click.echo(json.dumps(dataset.to_dict(), indent=2, ensure_ascii=False))
            return

        reporter.summary(summarize_dataset(dataset))
        reporter.success(f"Dataset ready: {dataset.metadata.repository_name}")

    except (StrataLoaderError, MemoryError) as e:
        reporter.error(str(e))
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
