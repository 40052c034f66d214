import aiohttp
import asyncio
import json
import logging
from typing import Dict, Any, Tuple, List, Optional

from src.domain.exceptions import SearchBackendError

logger = logging.getLogger(__name__)

# The single GraphQL query used to search repositories with pagination.
# The search string carries the language, star and name filters.
GRAPHQL_QUERY = """
query GitHubRepositorySearch(
  $searchQuery: String!
  $pageSize: Int!
  $cursor: String
  $languageOrderBy: LanguageOrder!
) {
  search(query: $searchQuery, type: REPOSITORY, first: $pageSize, after: $cursor) {
    repositoryCount
    pageInfo {
      endCursor
      hasNextPage
    }
    nodes {
      ... on Repository {
        id
        nameWithOwner
        url
        archivedAt
        isFork
        isLocked
        pushedAt
        updatedAt
        languages(first: 5, orderBy: $languageOrderBy) {
          totalSize
          edges {
            size
            node {
              name
            }
          }
        }
        defaultBranchRef {
          target {
            oid
          }
        }
      }
    }
  }
  rateLimit {
    cost
    remaining
    resetAt
  }
}
"""

# GitHub rejects `first` values above 100 on search connections.
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 100
RATE_LIMIT_FLOOR = 10
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
DEFAULT_USER_AGENT = "rustfmt-config-crawler"


class GitHubGraphQLClient:
    """
    Client for the GitHub GraphQL search API.
    Issues exactly one request per call; retrying is left to the caller.
    """

    def __init__(self, token: str, user_agent: str = DEFAULT_USER_AGENT):
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.api_url = "https://api.github.com/graphql"

    @staticmethod
    def clamp_page_size(page_size: int) -> int:
        return max(1, min(page_size, MAX_PAGE_SIZE))

    def build_payload(
        self,
        cursor: Optional[str],
        search_query: str,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        return {
            "operationName": "GitHubRepositorySearch",
            "query": GRAPHQL_QUERY,
            "variables": {
                "searchQuery": search_query,
                "pageSize": self.clamp_page_size(page_size),
                "cursor": cursor,
                "languageOrderBy": {"field": "SIZE", "direction": "DESC"},
            },
        }

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        cursor: Optional[str] = None,
        search_query: str = "language:rust stars:>=50",
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[Dict], Optional[str], bool, int, Optional[str]]:
        """
        Fetches a single page of repositories from GitHub.

        Returns:
            Tuple of (nodes, end_cursor, has_next_page, repository_count, rate_limit_reset_at).
            rate_limit_reset_at is None unless fewer than RATE_LIMIT_FLOOR points remain.

        Raises:
            SearchBackendError: On transport, HTTP, body or GraphQL errors.
        """
        payload = self.build_payload(cursor, search_query, page_size)
        logger.debug(f"GraphQL request variables: {payload['variables']}")

        try:
            async with session.post(self.api_url, json=payload, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise SearchBackendError(f"GitHub returned HTTP {response.status}: {body[:200]}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SearchBackendError(f"Request to {self.api_url} failed: {e!r}") from e
        except json.JSONDecodeError as e:
            raise SearchBackendError(f"GitHub returned a body that is not JSON: {e}") from e

        logger.debug(f"GraphQL response: {data}")
        if not isinstance(data, dict):
            raise SearchBackendError(f"Unexpected GraphQL response type: {type(data).__name__}")

        # GraphQL-level errors can occur even with HTTP 200
        if data.get('errors'):
            error_msg = data['errors'][0].get('message', 'Unknown GraphQL error')
            if data.get('data') is None:
                raise SearchBackendError(f"GraphQL error: {error_msg}")
            logger.warning(f"GraphQL partial error: {error_msg}")

        response_data = data.get('data') or {}
        rate_limit = response_data.get('rateLimit') or {}
        remaining = rate_limit.get('remaining', RATE_LIMIT_FLOOR)
        rate_limit_reset_at = None
        if remaining < RATE_LIMIT_FLOOR:
            rate_limit_reset_at = rate_limit.get('resetAt') or 'unknown'

        search_data = response_data.get('search')
        if not isinstance(search_data, dict):
            raise SearchBackendError("GraphQL response is missing the search field.")

        nodes = search_data.get('nodes') or []
        page_info = search_data.get('pageInfo') or {}
        repo_count = search_data.get('repositoryCount', 0)

        return (
            nodes,
            page_info.get('endCursor'),
            page_info.get('hasNextPage', False),
            repo_count,
            rate_limit_reset_at,
        )
