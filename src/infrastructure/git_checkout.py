import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from git import Repo
from git.exc import GitError

from src.domain.exceptions import CheckoutException

logger = logging.getLogger(__name__)

CONFIG_NAME_MARKER = "rustfmt"
CONFIG_FILE_EXTENSION = ".toml"
DEFAULT_CLONE_DEPTH = 1


def is_candidate_config_file(name: str) -> bool:
    """rustfmt.toml, .rustfmt.toml and variants such as rustfmt-nightly.toml."""
    return CONFIG_NAME_MARKER in name and name.endswith(CONFIG_FILE_EXTENSION)


class GitCheckout:
    """A local working copy of a cloned repository."""

    def __init__(self, repo: Repo, url: str):
        self._repo = repo
        self.url = url
        self.root = Path(repo.working_tree_dir)

    def __repr__(self) -> str:
        return f"GitCheckout(url={self.url!r}, root={str(self.root)!r})"

    def current_commit(self) -> Optional[str]:
        """Hash of the checked out HEAD, or None when HEAD cannot be resolved."""
        try:
            return self._repo.head.commit.hexsha
        except (ValueError, GitError) as e:
            logger.warning(f"Could not resolve HEAD for {self.url}: {e}")
            return None

    def list_candidate_config_files(self) -> List[Path]:
        """Absolute paths of every rustfmt config file in the working tree, in a stable order."""
        found = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            # Hidden directories are searched too, but never git's own metadata.
            dirnames[:] = [d for d in dirnames if d != ".git"]
            found.extend(Path(dirpath) / name for name in filenames if is_candidate_config_file(name))
        return sorted(found)


class GitCheckoutProvider:
    """Clones remote repositories with GitPython."""

    def clone(self, url: str, destination: Union[str, Path], depth: int = DEFAULT_CLONE_DEPTH) -> GitCheckout:
        """
        Shallow-clones `url` into the existing directory `destination`.

        Raises:
            CheckoutException: If the destination is not a directory or git fails.
        """
        destination = Path(destination)
        if not destination.is_dir():
            raise CheckoutException(f"{destination} is not a directory.")

        logger.info(f"Cloning {url} to {destination}")
        try:
            repo = Repo.clone_from(
                url,
                str(destination),
                depth=depth,
                no_tags=True,
                single_branch=True,
            )
        except GitError as e:
            raise CheckoutException(f"Failed to clone {url} to {destination}: {e}") from e
        return GitCheckout(repo, url)
