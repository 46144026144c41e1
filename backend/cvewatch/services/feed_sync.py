"""Local git mirrors, and change detection against the CVE JSON 5 feed mirror."""
import asyncio
import json
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
import structlog

from cvewatch.config import settings
from cvewatch.exceptions import CveParseError, FeedSyncError
from cvewatch.models.metadata import SystemMetadata

logger = structlog.get_logger()

REVISION_KEY = "feed_commit"
RECORDS_DIR = "cves"
IGNORED_FILES = {"delta.json", "deltaLog.json"}

CHANGE_KINDS = {"A": "added", "M": "modified", "T": "modified", "D": "removed"}


@dataclass(frozen=True)
class ChangeDescriptor:
    record_id: str
    change_kind: str  # added | modified | removed
    path: str  # relative to the mirror root


@dataclass
class SyncResult:
    mode: str  # clone | full | incremental
    from_revision: str | None
    to_revision: str
    changes: list[ChangeDescriptor] = field(default_factory=list)
    fallback_reason: str | None = None


def is_record_path(path: str) -> bool:
    parts = PurePosixPath(path)
    return (
        parts.parts[:1] == (RECORDS_DIR,)
        and parts.suffix == ".json"
        and parts.name not in IGNORED_FILES
    )


def parse_name_status(output: str) -> list[ChangeDescriptor]:
    """Parse ``git diff --name-status --no-renames`` output."""
    changes = []
    for line in output.splitlines():
        if not line.strip():
            continue
        status, _, path = line.partition("\t")
        kind = CHANGE_KINDS.get(status.strip()[:1])
        if kind is None or not is_record_path(path.strip()):
            continue
        path = path.strip()
        changes.append(ChangeDescriptor(PurePosixPath(path).stem, kind, path))
    return sorted(changes, key=lambda c: c.path)


class GitMirror:
    """A shallow git clone kept current with fast-forward pulls."""

    label = "git mirror"

    def __init__(
        self,
        repo_dir: Path,
        repo_url: str,
        retries: int | None = None,
        retry_wait: float | None = None,
    ):
        self.repo_dir = Path(repo_dir)
        self.repo_url = repo_url
        self.retries = retries or settings.git_retries
        self.retry_wait = settings.git_retry_wait if retry_wait is None else retry_wait

    async def _git(self, *args: str, cwd: Path | None = None, timeout: int = 120) -> str:
        logger.debug("Running git", command=" ".join(args), cwd=str(cwd) if cwd else None)
        try:
            process = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FeedSyncError(f"git could not be started: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FeedSyncError(f"git {args[0]} timed out after {timeout}s")

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise FeedSyncError(f"git {args[0]} failed ({process.returncode}): {detail}")
        return stdout.decode("utf-8", errors="replace")

    async def _with_retries(self, *args: str, cwd: Path | None = None, timeout: int = 120) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=self.retry_wait, max=60),
            retry=retry_if_exception_type(FeedSyncError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying git", command=args[0], attempt=attempt.retry_state.attempt_number)
                return await self._git(*args, cwd=cwd, timeout=timeout)

    def has_mirror(self) -> bool:
        return (self.repo_dir / ".git").exists()

    async def _clone(self):
        if self.repo_dir.exists() and any(self.repo_dir.iterdir()):
            logger.warning("Removing incomplete clone", mirror=self.label, path=str(self.repo_dir))
            await asyncio.to_thread(shutil.rmtree, self.repo_dir)
        self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning mirror", mirror=self.label, url=self.repo_url, path=str(self.repo_dir))
        await self._with_retries(
            "clone", "--depth", "1", self.repo_url, str(self.repo_dir),
            timeout=settings.git_clone_timeout,
        )

    async def _pull(self):
        logger.info("Pulling mirror", mirror=self.label, path=str(self.repo_dir))
        await self._with_retries("pull", "--ff-only", cwd=self.repo_dir, timeout=settings.git_pull_timeout)

    async def head_revision(self) -> str:
        return (await self._git("rev-parse", "HEAD", cwd=self.repo_dir)).strip()


class FeedSynchronizer(GitMirror):
    label = "cve feed"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        repo_dir: Path | None = None,
        repo_url: str | None = None,
        retries: int | None = None,
        retry_wait: float | None = None,
    ):
        super().__init__(
            repo_dir or settings.feed_repo_dir,
            repo_url or settings.feed_repo_url,
            retries=retries,
            retry_wait=retry_wait,
        )
        self.session_factory = session_factory

    # ── change detection ────────────────────────────────────────────────

    async def sync(self, full: bool = False) -> SyncResult:
        """Bring the mirror up to date and list the records that changed.

        The stored revision only moves forward through ``commit_revision``,
        so an interrupted pass is recomputed from the same starting point.
        """
        if not self.has_mirror():
            await self._clone()
            head = await self.head_revision()
            return SyncResult("clone", None, head, await self.walk())

        await self._pull()
        head = await self.head_revision()
        previous = await self.last_revision()

        if full or previous is None:
            reason = None if full else "no committed revision"
            return SyncResult("full", previous, head, await self.walk(), fallback_reason=reason)
        if previous == head:
            return SyncResult("incremental", previous, head, [])

        try:
            output = await self._git(
                "diff", "--name-status", "--no-renames", previous, head, "--", RECORDS_DIR,
                cwd=self.repo_dir,
            )
        except FeedSyncError as e:
            logger.warning("Feed diff failed, falling back to full walk", error=str(e))
            return SyncResult("full", previous, head, await self.walk(), fallback_reason=str(e))
        return SyncResult("incremental", previous, head, parse_name_status(output))

    async def walk(self) -> list[ChangeDescriptor]:
        def _walk() -> list[ChangeDescriptor]:
            root = self.repo_dir / RECORDS_DIR
            if not root.is_dir():
                raise FeedSyncError(f"feed mirror has no {RECORDS_DIR}/ directory: {self.repo_dir}")
            changes = []
            for path in root.rglob("*.json"):
                relative = path.relative_to(self.repo_dir).as_posix()
                if is_record_path(relative):
                    changes.append(ChangeDescriptor(path.stem, "added", relative))
            return sorted(changes, key=lambda c: c.path)

        return await asyncio.to_thread(_walk)

    async def read_record(self, change: ChangeDescriptor) -> dict:
        path = self.repo_dir / change.path
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return json.loads(text)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CveParseError(change.record_id, f"unreadable record file {change.path}: {e}") from e

    # ── revision bookkeeping ────────────────────────────────────────────

    async def last_revision(self) -> str | None:
        async with self.session_factory() as db:
            row = await db.get(SystemMetadata, REVISION_KEY)
            return row.value if row else None

    async def commit_revision(self, revision: str):
        async with self.session_factory() as db:
            row = await db.get(SystemMetadata, REVISION_KEY)
            if row is None:
                db.add(SystemMetadata(key=REVISION_KEY, value=revision))
            else:
                row.value = revision
                row.updated_at = datetime.utcnow()
            await db.commit()
        logger.info("Feed revision committed", revision=revision)
