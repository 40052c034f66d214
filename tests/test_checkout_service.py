import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from src.application.checkout_service import CheckoutService
from src.application.ingestion_service import BatchState, IngestionService
from src.domain.exceptions import CheckoutException
from src.domain.models import RepositoryEntity, RepositoryOrigin


def _repository(repo_id: str, name: str = None) -> RepositoryEntity:
    name = name or f"octocat/{repo_id}"
    return RepositoryEntity(
        origin=RepositoryOrigin.DATABASE,
        id=repo_id,
        name_with_owner=name,
        git_url=f"https://github.com/{name}.git",
        pushed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class _FakeRepository:
    def __init__(self, repositories) -> None:
        self.repositories = repositories
        self.lookup_limit = None
        self.stored = None

    async def lookup_repositories(self, limit):
        self.lookup_limit = limit
        return self.repositories[:limit]

    async def store_config_batch(self, config_files, checked_out_ids) -> None:
        self.stored = (list(config_files), set(checked_out_ids))


class _FakeCheckout:
    def __init__(self, root: Path) -> None:
        self.root = root

    def current_commit(self):
        return "cafe"

    def list_candidate_config_files(self):
        return [self.root / "rustfmt.toml"]


class _FakeProvider:
    """Clones succeed except for urls containing 'private'."""

    def __init__(self) -> None:
        self.cloned = []

    def clone(self, url, destination, depth=1):
        if "private" in url:
            raise CheckoutException(f"Failed to clone {url}")
        self.cloned.append((url, Path(destination), depth))
        return _FakeCheckout(Path(destination))


class _FakeDecoder:
    def decode_file(self, path):
        return {"edition": "2021"}


class TestCheckoutService(unittest.IsolatedAsyncioTestCase):
    def _service(self, repositories):
        db = _FakeRepository(repositories)
        provider = _FakeProvider()
        service = CheckoutService(db, provider, IngestionService(db, _FakeDecoder()))
        return service, db, provider

    async def test_run_skips_failed_clones_and_stores_the_rest(self) -> None:
        service, db, provider = self._service([_repository("hello"), _repository("private")])

        with tempfile.TemporaryDirectory() as workdir:
            report = await service.run(limit=10, workdir=workdir)

            self.assertEqual(provider.cloned[0][1], Path(workdir) / "hello" / "octocat" / "hello")
            self.assertTrue((Path(workdir) / "hello" / "octocat" / "hello").is_dir())

        self.assertEqual(db.lookup_limit, 10)
        self.assertEqual(report.state, BatchState.COMMITTED)
        config_files, checked_out_ids = db.stored
        self.assertEqual(checked_out_ids, {"hello"})
        self.assertEqual([f.config.relative_path for f in config_files], ["rustfmt.toml"])

    async def test_preview_does_not_write(self) -> None:
        service, db, _ = self._service([_repository("hello")])

        with tempfile.TemporaryDirectory() as workdir:
            preview = await service.preview(limit=1, workdir=workdir)

        self.assertIsNone(db.stored)
        repository, config_files = preview[0]
        self.assertEqual(repository.id, "hello")
        self.assertEqual(config_files[0].content, {"edition": "2021"})

    async def test_repositories_sharing_a_name_clone_into_separate_directories(self) -> None:
        service, db, provider = self._service([
            _repository("old-id", name="octocat/hello"),
            _repository("new-id", name="octocat/hello"),
        ])

        with tempfile.TemporaryDirectory() as workdir:
            await service.run(limit=10, workdir=workdir)

            destinations = [destination for _, destination, _ in provider.cloned]
            self.assertEqual(destinations, [
                Path(workdir) / "old-id" / "octocat" / "hello",
                Path(workdir) / "new-id" / "octocat" / "hello",
            ])

        _, checked_out_ids = db.stored
        self.assertEqual(checked_out_ids, {"old-id", "new-id"})
