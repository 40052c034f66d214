import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from src.application.ingestion_service import IngestionReport, IngestionService
from src.domain.exceptions import CheckoutException
from src.domain.models import ConfigFileEntity, RepositoryEntity
from src.infrastructure.database import PostgresRepository
from src.infrastructure.git_checkout import DEFAULT_CLONE_DEPTH, GitCheckout, GitCheckoutProvider

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Clones the least recently refreshed repositories and stores the rustfmt
    configs found in them.
    """

    def __init__(
            self,
            db_repository: PostgresRepository,
            checkout_provider: GitCheckoutProvider,
            ingestion_service: IngestionService,
            clone_depth: int = DEFAULT_CLONE_DEPTH,
    ):
        self.db_repository = db_repository
        self.checkout_provider = checkout_provider
        self.ingestion_service = ingestion_service
        self.clone_depth = clone_depth

    async def _checkout(self, repository: RepositoryEntity, workdir: Path) -> Optional[GitCheckout]:
        # Distinct ids can share a name after a rename or re-creation
        clone_path = workdir / repository.id / repository.name_with_owner
        try:
            clone_path.mkdir(parents=True, exist_ok=True)
            # git clones block, keep them off the event loop
            return await asyncio.to_thread(
                self.checkout_provider.clone, repository.git_url, clone_path, self.clone_depth,
            )
        except (CheckoutException, OSError) as e:
            logger.error(f"Skipping {repository.name_with_owner}: {e}")
            return None

    async def checkout_repositories(
        self, limit: int, workdir: Union[str, Path],
    ) -> List[Tuple[RepositoryEntity, GitCheckout]]:
        workdir = Path(workdir)
        repositories = await self.db_repository.lookup_repositories(limit)
        logger.info(f"Checking out {len(repositories)} repositories into {workdir}.")

        pairs = []
        for repository in repositories:
            checkout = await self._checkout(repository, workdir)
            if checkout is not None:
                pairs.append((repository, checkout))
        return pairs

    async def run(self, limit: int, workdir: Union[str, Path]) -> IngestionReport:
        pairs = await self.checkout_repositories(limit, workdir)
        return await self.ingestion_service.ingest_checkouts(pairs)

    async def preview(
        self, limit: int, workdir: Union[str, Path],
    ) -> List[Tuple[RepositoryEntity, List[ConfigFileEntity]]]:
        """Same as `run` without writing anything."""
        preview = []
        for repository, checkout in await self.checkout_repositories(limit, workdir):
            config_files, _ = self.ingestion_service.extract_config_files(checkout)
            preview.append((repository, config_files))
        return preview
