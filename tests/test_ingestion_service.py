import unittest
from datetime import datetime, timezone
from pathlib import Path

from src.application.ingestion_service import BatchState, IngestionService
from src.domain.exceptions import ConfigDecodeException, DatabaseException
from src.domain.models import RepositoryEntity, RepositoryOrigin


class _FakeRepository:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.upserted = []
        self.config_files = None
        self.checked_out_ids = None

    async def bulk_upsert(self, entities) -> int:
        self.upserted.extend(entities)
        return len({entity.id for entity in entities})

    async def store_config_batch(self, config_files, checked_out_ids) -> None:
        if self.fail:
            raise DatabaseException("Failed to store checkout batch; transaction rolled back.")
        self.config_files = list(config_files)
        self.checked_out_ids = set(checked_out_ids)


class _FakeCheckout:
    def __init__(self, root: str, commit, files) -> None:
        self.root = Path(root)
        self._commit = commit
        self._files = [self.root / f for f in files]

    def current_commit(self):
        return self._commit

    def list_candidate_config_files(self):
        return self._files


class _FakeDecoder:
    """Decodes every path except those named broken.toml."""

    def decode_file(self, path):
        path = Path(path)
        if path.name == "broken.toml":
            raise ConfigDecodeException(str(path), "Expected '=' after a key")
        return {"source": path.parent.name}


def _repository(repo_id: str) -> RepositoryEntity:
    return RepositoryEntity(
        origin=RepositoryOrigin.DATABASE,
        id=repo_id,
        name_with_owner=f"octocat/{repo_id}",
        git_url=f"https://github.com/octocat/{repo_id}.git",
        pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestIngestRepositories(unittest.IsolatedAsyncioTestCase):
    async def test_accepts_plain_iterables(self) -> None:
        db = _FakeRepository()
        service = IngestionService(db, _FakeDecoder())

        written = await service.ingest_repositories(iter([_repository("a"), _repository("b")]))

        self.assertEqual(written, 2)
        self.assertEqual([e.id for e in db.upserted], ["a", "b"])

    async def test_accepts_async_iterables(self) -> None:
        async def _records():
            yield _repository("a")
            yield _repository("b")

        db = _FakeRepository()
        service = IngestionService(db, _FakeDecoder())

        written = await service.ingest_repositories(_records())

        self.assertEqual(written, 2)


class TestIngestCheckouts(unittest.IsolatedAsyncioTestCase):
    async def test_unresolved_commit_is_excluded(self) -> None:
        db = _FakeRepository()
        service = IngestionService(db, _FakeDecoder())
        pairs = [
            (_repository("missing"), _FakeCheckout("/tmp/w/missing", None, ["rustfmt.toml"])),
            (_repository("found"), _FakeCheckout("/tmp/w/found", "deadbeef", ["rustfmt.toml"])),
        ]

        with self.assertLogs("src.application.ingestion_service", level="WARNING"):
            report = await service.ingest_checkouts(pairs)

        self.assertEqual(db.checked_out_ids, {"found"})
        self.assertEqual([f.repository_id for f in db.config_files], ["found"])
        self.assertEqual(db.config_files[0].latest_commit, "deadbeef")
        self.assertEqual(report.state, BatchState.COMMITTED)
        self.assertEqual(report.repositories_seen, 2)
        self.assertEqual(report.repositories_skipped, 1)
        self.assertEqual(report.checked_out_ids, ["found"])

    async def test_undecodable_file_does_not_block_siblings(self) -> None:
        db = _FakeRepository()
        service = IngestionService(db, _FakeDecoder())
        checkout = _FakeCheckout(
            "/tmp/w/repo", "cafe", ["rustfmt.toml", "broken.toml", "crates/a/.rustfmt.toml"],
        )

        report = await service.ingest_checkouts([(_repository("repo"), checkout)])

        self.assertEqual(
            [f.config.relative_path for f in db.config_files],
            ["rustfmt.toml", "crates/a/.rustfmt.toml"],
        )
        self.assertEqual(report.files_stored, 2)
        self.assertEqual(report.files_skipped, 1)
        self.assertEqual(db.checked_out_ids, {"repo"})

    async def test_repository_without_config_files_is_still_stamped(self) -> None:
        db = _FakeRepository()
        service = IngestionService(db, _FakeDecoder())

        await service.ingest_checkouts([(_repository("empty"), _FakeCheckout("/tmp/w/empty", "cafe", []))])

        self.assertEqual(db.config_files, [])
        self.assertEqual(db.checked_out_ids, {"empty"})

    async def test_statement_failure_propagates(self) -> None:
        db = _FakeRepository(fail=True)
        service = IngestionService(db, _FakeDecoder())
        pairs = [(_repository("repo"), _FakeCheckout("/tmp/w/repo", "cafe", ["rustfmt.toml"]))]

        with self.assertRaises(DatabaseException):
            await service.ingest_checkouts(pairs)
