import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

import aiohttp

from src.domain.exceptions import SearchBackendError
from src.domain.models import RepositoryEntity
from src.infrastructure.acl import GitHubTranslator
from src.infrastructure.github_client import DEFAULT_PAGE_SIZE, GitHubGraphQLClient

logger = logging.getLogger(__name__)

DEFAULT_MIN_STARS = 50
DEFAULT_MAX_PAGES = 1


@dataclass(frozen=True)
class RepositoryNameFilter:
    """Either a bare repository name (`rustfmt`) or one qualified by its owner (`rust-lang/rustfmt`)."""
    name: str

    @property
    def has_owner(self) -> bool:
        return "/" in self.name

    def qualifier(self) -> str:
        if self.has_owner:
            return f"repo:{self.name}"
        return f"{self.name} in:name"


def build_search_query(min_stars: int, name_filter: Optional[RepositoryNameFilter] = None) -> str:
    query = f"language:rust topic:rust stars:>={min_stars} template:false archived:false"
    if name_filter is not None:
        query = f"{query} {name_filter.qualifier()}"
    return query


@dataclass
class SearchCursorState:
    """Iteration state owned by exactly one RepositorySearchIterator."""
    page_size: int
    min_stars: int
    max_pages: Optional[int]
    name_filter: Optional[RepositoryNameFilter] = None
    next_cursor: Optional[str] = None
    pages_fetched: int = 0
    pending_buffer: Deque[RepositoryEntity] = field(default_factory=deque)
    exhausted: bool = False

    @property
    def ceiling_reached(self) -> bool:
        return self.max_pages is not None and self.pages_fetched >= self.max_pages


class RepositorySearchIterator:
    """
    Lazily pulls repositories from GitHub search, one page at a time.

    Records come out in the order GitHub returned them, and pages are requested
    strictly along the cursor chain. A page is only requested once the previous
    one has been fully consumed. The iterator stops for good when the page
    ceiling is reached, when GitHub reports no further pages, when the
    rate limit is nearly spent, or after the first failed request; a failure is
    only visible in the logs. The page that reported a low rate limit is still
    returned in full.
    """

    def __init__(
        self,
        github_client: GitHubGraphQLClient,
        session: aiohttp.ClientSession,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        min_stars: int = DEFAULT_MIN_STARS,
        max_pages: Optional[int] = DEFAULT_MAX_PAGES,
        name_filter: Optional[str] = None,
    ):
        self.github_client = github_client
        self.session = session
        self.state = SearchCursorState(
            page_size=GitHubGraphQLClient.clamp_page_size(page_size),
            min_stars=min_stars,
            max_pages=max_pages,
            name_filter=RepositoryNameFilter(name_filter) if name_filter else None,
        )
        self.search_query = build_search_query(min_stars, self.state.name_filter)
        self.last_repository_count: Optional[int] = None

    @property
    def next_cursor(self) -> Optional[str]:
        return self.state.next_cursor

    @property
    def pages_fetched(self) -> int:
        return self.state.pages_fetched

    async def _request_page(self) -> Optional[List[RepositoryEntity]]:
        state = self.state
        if state.exhausted or state.ceiling_reached:
            return None

        try:
            raw_nodes, end_cursor, has_next_page, repo_count, rate_limit_reset_at = await self.github_client.fetch_page(
                self.session, state.next_cursor, self.search_query, state.page_size,
            )
            # pydantic's ValidationError is a ValueError too
            repositories = GitHubTranslator.translate_page(raw_nodes)
        except SearchBackendError as e:
            logger.error(f"Search request failed after {state.pages_fetched} page(s): {e}")
            state.exhausted = True
            return None
        except ValueError as e:
            logger.error(f"Could not decode search page {state.pages_fetched + 1}: {e}")
            state.exhausted = True
            return None

        state.pages_fetched += 1
        self.last_repository_count = repo_count
        if has_next_page and end_cursor:
            state.next_cursor = end_cursor
        else:
            state.next_cursor = None
            state.exhausted = True

        if rate_limit_reset_at is not None:
            # The page is still good; stop before the next request would be refused.
            logger.warning(
                f"GitHub rate limit nearly spent after page {state.pages_fetched} "
                f"(resets at {rate_limit_reset_at}); no further pages will be requested."
            )
            state.exhausted = True

        logger.debug(
            f"Fetched page {state.pages_fetched} with {len(repositories)} repositories "
            f"({repo_count} matching in total)."
        )
        return repositories

    async def fetch_next_page(self) -> Optional[List[RepositoryEntity]]:
        """
        Returns the next page of repositories, or None once the iterator is done.
        Records already buffered by `next_record` are returned before any new request.
        """
        state = self.state
        if state.pending_buffer:
            buffered = list(state.pending_buffer)
            state.pending_buffer.clear()
            return buffered
        return await self._request_page()

    async def next_record(self) -> Optional[RepositoryEntity]:
        """Returns the next repository, or None once the iterator is done."""
        state = self.state
        while not state.pending_buffer:
            page = await self._request_page()
            if page is None:
                return None
            state.pending_buffer.extend(page)
        return state.pending_buffer.popleft()

    def __aiter__(self) -> "RepositorySearchIterator":
        return self

    async def __anext__(self) -> RepositoryEntity:
        record = await self.next_record()
        if record is None:
            raise StopAsyncIteration
        return record
