import logging
import sys
from typing import Optional, TextIO

import aiohttp
from pydantic import BaseModel, ConfigDict

from src.application.ingestion_service import IngestionService
from src.application.search_iterator import (
    DEFAULT_MAX_PAGES,
    DEFAULT_MIN_STARS,
    RepositorySearchIterator,
)
from src.infrastructure.github_client import DEFAULT_PAGE_SIZE, GitHubGraphQLClient

logger = logging.getLogger(__name__)

# Page requests are strictly sequential, one connection is enough
CONNECTOR_LIMIT = 1


class CrawlResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    pages_fetched: int
    repositories_seen: int
    repositories_stored: int
    next_cursor: Optional[str] = None


class CrawlerService:
    """
    Walks GitHub search results page by page and upserts each page as it arrives.
    """

    def __init__(
            self,
            github_client: GitHubGraphQLClient,
            ingestion_service: IngestionService,
            page_size: int = DEFAULT_PAGE_SIZE,
            min_stars: int = DEFAULT_MIN_STARS,
            max_pages: Optional[int] = DEFAULT_MAX_PAGES,
            name_filter: Optional[str] = None,
    ):
        self.github_client = github_client
        self.ingestion_service = ingestion_service
        self.page_size = page_size
        self.min_stars = min_stars
        self.max_pages = max_pages
        self.name_filter = name_filter

    def _search(self, session: aiohttp.ClientSession) -> RepositorySearchIterator:
        return RepositorySearchIterator(
            self.github_client,
            session,
            page_size=self.page_size,
            min_stars=self.min_stars,
            max_pages=self.max_pages,
            name_filter=self.name_filter,
        )

    async def crawl(self, dry_run: bool = False, out: TextIO = sys.stdout) -> CrawlResult:
        """
        Fetches up to `max_pages` pages of repositories. Each page is stored with
        one upsert, or printed to `out` when `dry_run` is set.

        Raises:
            DatabaseException: If storing a page fails. Pages stored before it stay stored.
        """
        seen = 0
        stored = 0
        logger.info(
            f"Starting crawl: min_stars={self.min_stars}, page_size={self.page_size}, "
            f"max_pages={self.max_pages}, name={self.name_filter or '-'}."
        )

        async with aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
        ) as session:
            search = self._search(session)
            while (repositories := await search.fetch_next_page()) is not None:
                seen += len(repositories)
                if dry_run:
                    for repository in repositories:
                        out.write(f"{repository}\n")
                    continue
                stored += await self.ingestion_service.ingest_repositories(repositories)
                logger.info(f"Page {search.pages_fetched}: stored {len(repositories)}. Total: {stored}.")

        logger.info(f"Crawling completed after {search.pages_fetched} page(s). Next cursor: {search.next_cursor}.")
        return CrawlResult(
            pages_fetched=search.pages_fetched,
            repositories_seen=seen,
            repositories_stored=stored,
            next_cursor=search.next_cursor,
        )
