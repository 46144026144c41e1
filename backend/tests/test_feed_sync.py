"""Tests for the git-backed feed mirror with git itself scripted out."""
import json

import pytest

from cvewatch.exceptions import CveParseError, FeedSyncError
from cvewatch.services.feed_sync import ChangeDescriptor, FeedSynchronizer, is_record_path, parse_name_status
from factories import make_raw_cve


class ScriptedSynchronizer(FeedSynchronizer):
    """FeedSynchronizer whose git commands are answered from a script."""

    def __init__(self, session_factory, repo_dir, head="abc123", **kwargs):
        super().__init__(session_factory, repo_dir=repo_dir, retries=3, retry_wait=0, **kwargs)
        self.head = head
        self.calls = []
        self.failures = {}  # command -> number of times it fails before succeeding
        self.diff_output = ""

    async def _git(self, *args, cwd=None, timeout=120):
        command = args[0]
        self.calls.append(command)
        if self.failures.get(command):
            self.failures[command] -= 1
            raise FeedSyncError(f"git {command} failed (128): simulated")
        if command == "clone":
            target = self.repo_dir
            (target / ".git").mkdir(parents=True)
            write_record(target, "CVE-2024-0001")
            write_record(target, "CVE-2023-9999")
            return ""
        if command == "rev-parse":
            return self.head + "\n"
        if command == "diff":
            return self.diff_output
        return ""


def write_record(repo_dir, cve_id, payload=None):
    year, number = cve_id.split("-")[1], cve_id.split("-")[2]
    folder = repo_dir / "cves" / year / f"{number[:-3]}xxx"
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / f"{cve_id}.json"
    path.write_text(payload if payload is not None else json.dumps(make_raw_cve(cve_id)))
    return path


@pytest.fixture
def repo_dir(tmp_path):
    return tmp_path / "cvelistV5"


class TestParseNameStatus:
    def test_maps_status_letters(self):
        output = (
            "A\tcves/2024/0xxx/CVE-2024-0003.json\n"
            "M\tcves/2024/0xxx/CVE-2024-0001.json\n"
            "D\tcves/2023/9xxx/CVE-2023-9999.json\n"
            "T\tcves/2024/0xxx/CVE-2024-0002.json\n"
        )
        assert parse_name_status(output) == [
            ChangeDescriptor("CVE-2023-9999", "removed", "cves/2023/9xxx/CVE-2023-9999.json"),
            ChangeDescriptor("CVE-2024-0001", "modified", "cves/2024/0xxx/CVE-2024-0001.json"),
            ChangeDescriptor("CVE-2024-0002", "modified", "cves/2024/0xxx/CVE-2024-0002.json"),
            ChangeDescriptor("CVE-2024-0003", "added", "cves/2024/0xxx/CVE-2024-0003.json"),
        ]

    def test_skips_non_record_files(self):
        output = (
            "M\tcves/delta.json\n"
            "M\tcves/deltaLog.json\n"
            "M\tREADME.md\n"
            "M\tcves/2024/0xxx/notes.txt\n"
            "\n"
        )
        assert parse_name_status(output) == []

    def test_is_record_path(self):
        assert is_record_path("cves/2024/1xxx/CVE-2024-1234.json")
        assert not is_record_path("other/CVE-2024-1234.json")
        assert not is_record_path("cves/delta.json")


class TestSync:
    async def test_first_sync_clones_and_walks(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        result = await sync.sync()

        assert result.mode == "clone"
        assert result.from_revision is None
        assert result.to_revision == "abc123"
        assert [c.record_id for c in result.changes] == ["CVE-2023-9999", "CVE-2024-0001"]
        assert sync.calls == ["clone", "rev-parse"]

    async def test_clone_replaces_incomplete_directory(self, session_factory, repo_dir):
        repo_dir.mkdir(parents=True)
        (repo_dir / "partial.tmp").write_text("x")
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        assert not (repo_dir / "partial.tmp").exists()

    async def test_incremental_diff(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        await sync.commit_revision("abc123")

        sync.head = "def456"
        sync.diff_output = "M\tcves/2024/0xxx/CVE-2024-0001.json\n"
        result = await sync.sync()

        assert result.mode == "incremental"
        assert (result.from_revision, result.to_revision) == ("abc123", "def456")
        assert result.changes == [ChangeDescriptor("CVE-2024-0001", "modified", "cves/2024/0xxx/CVE-2024-0001.json")]
        assert result.fallback_reason is None

    async def test_no_new_commits(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        await sync.commit_revision("abc123")
        result = await sync.sync()
        assert result.changes == []
        assert "diff" not in sync.calls

    async def test_without_committed_revision_walks_everything(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        result = await sync.sync()
        assert result.mode == "full"
        assert result.fallback_reason == "no committed revision"
        assert len(result.changes) == 2

    async def test_full_requested(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        await sync.commit_revision("abc123")
        sync.head = "def456"
        result = await sync.sync(full=True)
        assert result.mode == "full"
        assert result.fallback_reason is None
        assert "diff" not in sync.calls

    async def test_diff_failure_falls_back_to_walk(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        await sync.commit_revision("abc123")
        sync.head = "def456"
        sync.failures["diff"] = 1
        result = await sync.sync()

        assert result.mode == "full"
        assert "simulated" in result.fallback_reason
        assert len(result.changes) == 2

    async def test_pull_retried(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        sync.failures["pull"] = 2
        await sync.sync()
        assert sync.calls.count("pull") == 3

    async def test_pull_gives_up(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        await sync.sync()
        sync.failures["pull"] = 5
        with pytest.raises(FeedSyncError):
            await sync.sync()
        assert sync.calls.count("pull") == 3

    async def test_mirror_without_records_dir(self, session_factory, repo_dir):
        (repo_dir / ".git").mkdir(parents=True)
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        with pytest.raises(FeedSyncError):
            await sync.sync(full=True)


class TestReadRecord:
    async def test_reads_json(self, session_factory, repo_dir):
        path = write_record(repo_dir, "CVE-2024-0042")
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        raw = await sync.read_record(
            ChangeDescriptor("CVE-2024-0042", "added", path.relative_to(repo_dir).as_posix())
        )
        assert raw["cveMetadata"]["cveId"] == "CVE-2024-0042"

    async def test_invalid_json(self, session_factory, repo_dir):
        path = write_record(repo_dir, "CVE-2024-0043", payload="{not json")
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        with pytest.raises(CveParseError) as exc:
            await sync.read_record(
                ChangeDescriptor("CVE-2024-0043", "added", path.relative_to(repo_dir).as_posix())
            )
        assert exc.value.record_id == "CVE-2024-0043"

    async def test_missing_file(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        with pytest.raises(CveParseError):
            await sync.read_record(ChangeDescriptor("CVE-2024-0044", "added", "cves/2024/0xxx/CVE-2024-0044.json"))


class TestRevisionBookkeeping:
    async def test_commit_and_read_back(self, session_factory, repo_dir):
        sync = ScriptedSynchronizer(session_factory, repo_dir)
        assert await sync.last_revision() is None
        await sync.commit_revision("abc123")
        await sync.commit_revision("def456")
        assert await sync.last_revision() == "def456"
