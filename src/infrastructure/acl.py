from datetime import datetime
from typing import Any, Dict, List, Optional
from src.domain.models import GIT_URL_SUFFIX, RepositoryEntity, RepositoryOrigin

TARGET_LANGUAGE = "Rust"


def _parse_datetime(raw_date: Optional[str]) -> Optional[datetime]:
    if not raw_date:
        return None
    return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub GraphQL JSON responses into RepositoryEntity instances.
    """

    @staticmethod
    def percent_of_code_in(languages: Optional[Dict[str, Any]], language: str = TARGET_LANGUAGE) -> float:
        """
        Share of the repository's bytes written in `language`, from 0.0 to 100.0.
        0.0 when the language is absent or GitHub reports a total size of zero.
        """
        if not languages:
            return 0.0
        total_size = languages.get('totalSize') or 0
        if total_size <= 0:
            return 0.0

        for edge in languages.get('edges') or []:
            if (edge.get('node') or {}).get('name') == language:
                percent = edge.get('size', 0) / total_size * 100
                return min(max(percent, 0.0), 100.0)
        return 0.0

    @staticmethod
    def to_domain(raw_node: Dict[str, Any]) -> RepositoryEntity:
        """
        Transforms a raw GitHub GraphQL node into a RepositoryEntity.
        
        Args:
            raw_node (Dict[str, Any]): The raw JSON node from GitHub's GraphQL response.
        
        Returns:
            RepositoryEntity: The domain model instance representing the repository.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        pushed_at = _parse_datetime(raw_node.get('pushedAt'))
        if pushed_at is None:
            raise ValueError("pushedAt is required to build RepositoryEntity.")
        updated_at = _parse_datetime(raw_node.get('updatedAt'))
        if updated_at is None:
            raise ValueError("updatedAt is required to build RepositoryEntity.")

        url = raw_node.get('url')
        if not url:
            raise ValueError("url is required to build RepositoryEntity.")

        # Empty repositories have no default branch
        branch_ref = raw_node.get('defaultBranchRef') or {}
        target = branch_ref.get('target') or {}

        return RepositoryEntity(
            origin=RepositoryOrigin.SEARCH,
            id=raw_node.get('id', ''),
            name_with_owner=raw_node.get('nameWithOwner', ''),
            git_url=f"{url.rstrip('/')}{GIT_URL_SUFFIX}",
            rust_fraction=GitHubTranslator.percent_of_code_in(raw_node.get('languages')),
            latest_commit=target.get('oid') or '',
            is_fork=bool(raw_node.get('isFork', False)),
            is_locked=bool(raw_node.get('isLocked', False)),
            archived_at=_parse_datetime(raw_node.get('archivedAt')),
            pushed_at=pushed_at,
            updated_at=updated_at,
        )

    @staticmethod
    def translate_page(raw_nodes: List[Optional[Dict[str, Any]]]) -> List[RepositoryEntity]:
        """Translates a page of nodes in order, skipping null nodes GitHub returns for hidden results."""
        return [GitHubTranslator.to_domain(node) for node in raw_nodes if node]
