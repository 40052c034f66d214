import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from src.domain.exceptions import ConfigDecodeException, DatabaseException
from src.domain.models import ConfigFileEntity, RepositoryConfigFile, RepositoryEntity
from src.infrastructure.database import PostgresRepository

logger = logging.getLogger(__name__)


class CheckoutHandle(Protocol):
    root: Path

    def current_commit(self) -> Optional[str]: ...

    def list_candidate_config_files(self) -> Sequence[Path]: ...


class ConfigDecoder(Protocol):
    def decode_file(self, path: Union[str, Path]) -> Dict[str, Any]: ...


class BatchState(str, Enum):
    OPEN = "open"
    ACCUMULATING = "accumulating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class IngestionReport(BaseModel):
    """Summary of one committed checkout batch."""
    model_config = ConfigDict(frozen=True)

    state: BatchState
    repositories_seen: int = 0
    repositories_skipped: int = 0
    files_stored: int = 0
    files_skipped: int = 0
    checked_out_ids: List[str] = Field(default_factory=list)


@dataclass
class _CheckoutBatch:
    state: BatchState = BatchState.OPEN
    config_files: List[RepositoryConfigFile] = field(default_factory=list)
    checked_out_ids: Set[str] = field(default_factory=set)
    repositories_seen: int = 0
    repositories_skipped: int = 0
    files_skipped: int = 0

    def to_report(self) -> IngestionReport:
        return IngestionReport(
            state=self.state,
            repositories_seen=self.repositories_seen,
            repositories_skipped=self.repositories_skipped,
            files_stored=len(self.config_files),
            files_skipped=self.files_skipped,
            checked_out_ids=sorted(self.checked_out_ids),
        )


class IngestionService:
    """
    Persists repositories (bare upsert) and the config files found in their
    checkouts (upsert plus last_checked_out_at stamping, one transaction).
    """

    def __init__(self, db_repository: PostgresRepository, config_decoder: ConfigDecoder):
        self.db_repository = db_repository
        self.config_decoder = config_decoder

    async def ingest_repositories(
        self,
        repositories: Union[Iterable[RepositoryEntity], AsyncIterable[RepositoryEntity]],
    ) -> int:
        """
        Upserts every repository in one statement and returns the number of
        distinct ids written. A DatabaseException leaves the store untouched.
        """
        if hasattr(repositories, "__aiter__"):
            entities = [repository async for repository in repositories]
        else:
            entities = list(repositories)
        return await self.db_repository.bulk_upsert(entities)

    def extract_config_files(self, checkout: CheckoutHandle) -> Tuple[List[ConfigFileEntity], int]:
        """
        Decodes every candidate config file in a checkout.

        Returns:
            The decoded files and how many candidates were skipped. A file that
            cannot be read or decoded is logged and skipped on its own.
        """
        config_files = []
        skipped = 0
        for path in checkout.list_candidate_config_files():
            try:
                content = self.config_decoder.decode_file(path)
                config_files.append(ConfigFileEntity.from_checkout(checkout.root, path, content))
            except ConfigDecodeException as e:
                logger.warning(f"Skipping config file: {e}")
                skipped += 1
            except ValueError as e:
                logger.warning(f"Skipping {path}: not inside {checkout.root} ({e})")
                skipped += 1
        return config_files, skipped

    def _accumulate(self, batch: _CheckoutBatch, repository: RepositoryEntity, checkout: CheckoutHandle) -> None:
        batch.repositories_seen += 1
        commit = checkout.current_commit()
        if not commit:
            logger.warning(f"No commit found for {repository.name_with_owner}; skipping its config files.")
            batch.repositories_skipped += 1
            return

        batch.checked_out_ids.add(repository.id)
        config_files, skipped = self.extract_config_files(checkout)
        batch.files_skipped += skipped
        batch.config_files.extend(
            RepositoryConfigFile(repository_id=repository.id, latest_commit=commit, config=config)
            for config in config_files
        )
        logger.info(
            f"{repository.name_with_owner}@{commit[:12]}: {len(config_files)} config file(s), {skipped} skipped."
        )

    async def ingest_checkouts(
        self,
        pairs: Iterable[Tuple[RepositoryEntity, CheckoutHandle]],
    ) -> IngestionReport:
        """
        Stores the config files of a batch of checkouts and stamps
        last_checked_out_at for every repository whose commit resolved.

        Either all rows of the batch land together with the timestamps, or
        nothing does.

        Raises:
            DatabaseException: If a statement fails; the transaction is rolled back.
        """
        batch = _CheckoutBatch()
        batch.state = BatchState.ACCUMULATING
        for repository, checkout in pairs:
            self._accumulate(batch, repository, checkout)

        batch.state = BatchState.COMMITTING
        try:
            await self.db_repository.store_config_batch(batch.config_files, batch.checked_out_ids)
        except DatabaseException:
            logger.error(
                f"Checkout batch of {batch.repositories_seen} repositories failed; "
                f"{len(batch.config_files)} config file(s) were not stored."
            )
            batch.state = BatchState.ROLLED_BACK
            raise

        batch.state = BatchState.COMMITTED
        report = batch.to_report()
        logger.info(
            f"Stored {report.files_stored} config file(s) for {len(report.checked_out_ids)} "
            f"repositories ({report.repositories_skipped} skipped, {report.files_skipped} file(s) skipped)."
        )
        return report
