import argparse
import asyncio
import os
import sys
import logging
import tempfile
from typing import List, Optional
from dotenv import load_dotenv

from src.infrastructure.github_client import DEFAULT_USER_AGENT, GitHubGraphQLClient
from src.infrastructure.database import PostgresRepository
from src.infrastructure.git_checkout import GitCheckoutProvider
from src.infrastructure.toml_decoder import TomlConfigDecoder
from src.application.crawler_service import CrawlerService
from src.application.checkout_service import CheckoutService
from src.application.ingestion_service import IngestionService
from src.domain.exceptions import CrawlerException

logger = logging.getLogger(__name__)


def configure_logging(level_name: Optional[str]) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rustfmt-config-crawler",
        description="Manage the rustfmt user configuration database",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_repo = subparsers.add_parser("add-repo", help="Add repositories from GitHub into the database")
    add_repo.add_argument("-l", "--limit", type=int, default=100,
                          help="How many repositories to fetch on each page")
    add_repo.add_argument("-m", "--max-pages", type=int, default=1, help="Max number of pages to query")
    add_repo.add_argument("-s", "--stars", type=int, default=50,
                          help="Filter for repositories that have this number of stars or more")
    add_repo.add_argument("-r", "--repo", default=None,
                          help="Repository name like `rustfmt`, or with the owner like `rust-lang/rustfmt`")
    add_repo.add_argument("-d", "--dry-run", action="store_true",
                          help="Print the repositories instead of storing them")

    extract = subparsers.add_parser("extract-configs", help="Clone stored repositories and store their rustfmt configs")
    extract.add_argument("-l", "--limit", type=int, default=10, help="How many repositories to check out")
    extract.add_argument("-d", "--dry-run", action="store_true",
                         help="Print the config files instead of storing them")

    subparsers.add_parser("init-db", help="Create the database tables")
    return parser


async def add_repositories(args: argparse.Namespace, db_url: str) -> None:
    github_token = os.getenv("GITHUB_TOKEN")
    if not github_token:
        logger.error("GITHUB_TOKEN is not set in the environment.")
        sys.exit(1)

    github_client = GitHubGraphQLClient(
        token=github_token,
        user_agent=os.getenv("GITHUB_USER_AGENT") or DEFAULT_USER_AGENT,
    )
    db_repository = PostgresRepository(db_url=db_url)
    crawler_service = CrawlerService(
        github_client=github_client,
        ingestion_service=IngestionService(db_repository, TomlConfigDecoder()),
        page_size=args.limit,
        min_stars=args.stars,
        max_pages=args.max_pages,
        name_filter=args.repo,
    )
    try:
        result = await crawler_service.crawl(dry_run=args.dry_run)
    finally:
        await db_repository.dispose()
    print(f"Next Token: {result.next_cursor}")


async def extract_configs(args: argparse.Namespace, db_url: str) -> None:
    db_repository = PostgresRepository(db_url=db_url)
    checkout_service = CheckoutService(
        db_repository=db_repository,
        checkout_provider=GitCheckoutProvider(),
        ingestion_service=IngestionService(db_repository, TomlConfigDecoder()),
    )
    try:
        with tempfile.TemporaryDirectory() as workdir:
            if args.dry_run:
                for repository, config_files in await checkout_service.preview(args.limit, workdir):
                    for config_file in config_files:
                        print(f"{repository.name_with_owner}: {config_file.relative_path} {config_file.content}")
                return
            await checkout_service.run(args.limit, workdir)
    finally:
        await db_repository.dispose()


async def init_db(db_url: str) -> None:
    db_repository = PostgresRepository(db_url=db_url)
    try:
        await db_repository.create_schema()
    finally:
        await db_repository.dispose()
    logger.info("Database tables created.")


async def main(argv: Optional[List[str]] = None):
    # Load environment variables from .env file
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL"))

    args = build_parser().parse_args(argv)

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL is not set in the environment.")
        sys.exit(1)

    try:
        if args.command == "add-repo":
            await add_repositories(args, db_url)
        elif args.command == "extract-configs":
            await extract_configs(args, db_url)
        elif args.command == "init-db":
            await init_db(db_url)
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
    except CrawlerException as e:
        logger.exception(f"{args.command} failed: {e}")
        sys.exit(1)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
