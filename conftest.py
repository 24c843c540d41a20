import json
import os

import pytest

from strata_loader import DATASET_REGISTRY, ProgressReporter


def _event(commit_hash, timestamp, operation, author_name, author_email, subject):
    return {
        "commit_hash": commit_hash,
        "timestamp": timestamp,
        "datetime": "",
        "operation": operation,
        "author_name": author_name,
        "author_email": author_email,
        "commit_subject": subject,
    }


ALICE = ("Alice Smith", "alice@example.com")
BOB = ("Bob Jones", "bob@example.com")

# 1_700_000_000 = 2023-11-14 22:13:20 UTC
# 1_700_100_000 = 2023-11-16 02:00:00 UTC
# 1_700_200_000 = 2023-11-17 05:46:40 UTC


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def sample_lifecycle():
    """Three commits, two authors, four files across src/, tests/ and root."""
    return {
        "repository_path": "/home/dev/projects/demo",
        "generated_at": "2023-11-18T10:00:00+00:00",
        "total_commits": 3,
        "total_changes": 7,
        "schema_version": "1.1.0",
        "files": {
            "src/main.py": [
                _event("aaa111", 1_700_000_000, "A", *ALICE, "initial commit"),
                _event("bbb222", 1_700_100_000, "M", *BOB, "add feature"),
                _event("ccc333", 1_700_200_000, "M", *ALICE, "fix bug"),
            ],
            "src/utils.py": [
                _event("aaa111", 1_700_000_000, "A", *ALICE, "initial commit"),
                _event("ccc333", 1_700_200_000, "R", *ALICE, "fix bug"),
            ],
            "tests/test_main.py": [
                _event("bbb222", 1_700_100_000, "A", *BOB, "add feature"),
            ],
            "README.md": [
                _event("aaa111", 1_700_000_000, "A", *ALICE, "initial commit"),
            ],
        },
    }


@pytest.fixture
def sample_author_network():
    return {
        "schema_version": "1.0.0",
        "network_type": "author_collaboration",
        "nodes": [
            {
                "id": "alice@example.com",
                "email": "alice@example.com",
                "commit_count": 2,
                "collaboration_count": 1,
            },
            {
                "id": "bob@example.com",
                "email": "bob@example.com",
                "commit_count": 1,
                "collaboration_count": 1,
            },
        ],
        "edges": [],
    }


@pytest.fixture
def sample_file_index():
    return {
        "schema_version": "1.0.0",
        "total_files": 4,
        "files": {
            "src/main.py": {"total_commits": 3},
            "src/utils.py": {"total_commits": 2},
            "tests/test_main.py": {"total_commits": 1},
            "README.md": {"total_commits": 1},
        },
    }


@pytest.fixture
def sample_directory_stats():
    """Hierarchy stats as the analyzer writes them: files and a stale entry mixed in."""

    def entry(path, commits, score):
        return {
            "path": path,
            "total_files": 1,
            "total_commits": commits,
            "unique_authors": 1,
            "operations": {},
            "activity_score": score,
        }

    return {
        "schema_version": "1.0.0",
        "aggregation_type": "directory_hierarchy",
        "directories": {
            "src": entry("src", 5, 2.5),
            "src/main.py": entry("src/main.py", 3, 3.0),
            "src/utils.py": entry("src/utils.py", 2, 2.0),
            "tests": entry("tests", 1, 1.0),
            "tests/test_main.py": entry("tests/test_main.py", 1, 1.0),
            "README.md": entry("README.md", 1, 1.0),
            "ghost/": entry("ghost/", 9, 4.5),
        },
    }


@pytest.fixture
def sample_documents(
    sample_lifecycle, sample_author_network, sample_file_index, sample_directory_stats
):
    return {
        "file_lifecycle": sample_lifecycle,
        "author_network": sample_author_network,
        "file_index": sample_file_index,
        "directory_stats": sample_directory_stats,
    }


def write_dataset_dir(base_dir, documents):
    for dataset_id, document in documents.items():
        path = os.path.join(str(base_dir), *DATASET_REGISTRY[dataset_id].path.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
    return str(base_dir)


@pytest.fixture
def make_dataset_dir(tmp_path):
    def make(documents, name="custom"):
        return write_dataset_dir(tmp_path / name, documents)

    return make


@pytest.fixture
def dataset_dir(tmp_path, sample_documents):
    """Analyzer output directory holding the four sample datasets."""
    return write_dataset_dir(tmp_path / "output", sample_documents)
