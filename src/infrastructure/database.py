import logging
from typing import Iterable, List
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert, JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import (
    Table, Column, String, Boolean, Float, DateTime, MetaData, ForeignKey,
    PrimaryKeyConstraint, select, update, text,
)

from src.domain.exceptions import DatabaseException
from src.domain.models import RepositoryConfigFile, RepositoryEntity, RepositoryOrigin

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()
repos_table = Table(
    'repositories', metadata,
    Column('id', String, primary_key=True),
    Column('name_with_owner', String, nullable=False),
    Column('git_url', String, nullable=False),
    Column('is_fork', Boolean, nullable=False, server_default=text('false')),
    Column('is_locked', Boolean, nullable=False, server_default=text('false')),
    Column('latest_commit', String, nullable=False, server_default=text("''")),
    Column('rust_fraction', Float, nullable=False, server_default=text('0')),
    Column('archived_at', DateTime(timezone=True), nullable=True),
    Column('pushed_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('record_last_updated', DateTime(timezone=True), nullable=False, server_default=text('NOW()')),
    Column('last_checked_out_at', DateTime(timezone=True), nullable=True),
    Column('can_clone_repo', Boolean, nullable=False, server_default=text('true')),
)
config_files_table = Table(
    'repository_config_files', metadata,
    Column('repository_id', String, ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False),
    Column('latest_commit', String, nullable=False),
    Column('relative_path', String, nullable=False),
    Column('content', JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column('record_last_updated', DateTime(timezone=True), nullable=False, server_default=text('NOW()')),
    PrimaryKeyConstraint('repository_id', 'relative_path'),
)

# Every column a search refresh is allowed to overwrite; `id` is the conflict key.
MUTABLE_REPOSITORY_COLUMNS = (
    'name_with_owner',
    'git_url',
    'is_fork',
    'is_locked',
    'latest_commit',
    'rust_fraction',
    'archived_at',
    'pushed_at',
    'updated_at',
)


class PostgresRepository:
    """
    Repository class for interacting with the PostgreSQL database.
    Owns the two-table write path and the checkout lookup.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def build_upsert_statement(self, entities: Iterable[RepositoryEntity]):
        """
        Builds one multi-row upsert keyed by id.

        Postgres refuses to update the same row twice in one statement, so a
        repeated id keeps only its last occurrence in the batch.
        """
        latest = {entity.id: entity for entity in entities}
        values = [
            {   'id': entity.id,
                'name_with_owner': entity.name_with_owner,
                'git_url': entity.git_url,
                'is_fork': entity.is_fork,
                'is_locked': entity.is_locked,
                'latest_commit': entity.latest_commit,
                'rust_fraction': entity.rust_fraction,
                'archived_at': entity.archived_at,
                'pushed_at': entity.pushed_at,
                'updated_at': entity.updated_at,
            } for entity in latest.values()
        ]
        if not values:
            return None

        stmt = insert(repos_table).values(values)
        set_ = {column: stmt.excluded[column] for column in MUTABLE_REPOSITORY_COLUMNS}
        set_['record_last_updated'] = text('NOW()')
        return stmt.on_conflict_do_update(index_elements=['id'], set_=set_)

    async def bulk_upsert(self, entities: Iterable[RepositoryEntity]) -> int:
        """
        Inserts or refreshes repositories with a single statement.

        Args:
            entities (Iterable[RepositoryEntity]): Repository entities to store.

        Returns:
            int: Number of distinct repository ids written.

        Raises:
            DatabaseException: If the statement fails. Nothing is written in that case.
        """
        entities = list(entities)
        upsert_stmt = self.build_upsert_statement(entities)
        if upsert_stmt is None:
            return 0  # No entities to insert

        distinct = len({entity.id for entity in entities})
        try:
            async with self.engine.begin() as conn:
                await conn.execute(upsert_stmt)
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to upsert {distinct} repositories.") from e

        logger.info(f"Upserted {distinct} repositories.")
        return distinct

    def build_config_upsert_statement(self, config_files: Iterable[RepositoryConfigFile]):
        latest = {(f.repository_id, f.config.relative_path): f for f in config_files}
        values = [
            {   'repository_id': f.repository_id,
                'latest_commit': f.latest_commit,
                'relative_path': f.config.relative_path,
                'content': f.config.content,
            } for f in latest.values()
        ]
        if not values:
            return None

        stmt = insert(config_files_table).values(values)
        return stmt.on_conflict_do_update(
            index_elements=['repository_id', 'relative_path'],
            set_={
                'latest_commit': stmt.excluded.latest_commit,
                'content': stmt.excluded.content,
                'record_last_updated': text('NOW()'),
            },
        )

    def build_checked_out_statement(self, repository_ids: Iterable[str]):
        ids = sorted(set(repository_ids))
        if not ids:
            return None
        return (
            update(repos_table)
            .where(repos_table.c.id.in_(ids))
            .values(last_checked_out_at=text('NOW()'))
        )

    async def store_config_batch(
        self,
        config_files: Iterable[RepositoryConfigFile],
        checked_out_ids: Iterable[str],
    ) -> None:
        """
        Writes config file rows and stamps last_checked_out_at in one transaction.

        Either both statements land or neither does: `engine.begin()` rolls the
        transaction back when any statement raises.

        Raises:
            DatabaseException: If either statement fails.
        """
        config_stmt = self.build_config_upsert_statement(config_files)
        checked_out_stmt = self.build_checked_out_statement(checked_out_ids)
        if config_stmt is None and checked_out_stmt is None:
            logger.info("Nothing to store for this checkout batch.")
            return

        try:
            async with self.engine.begin() as conn:
                if config_stmt is not None:
                    await conn.execute(config_stmt)
                if checked_out_stmt is not None:
                    await conn.execute(checked_out_stmt)
        except SQLAlchemyError as e:
            logger.error(f"Checkout batch rolled back: {e}")
            raise DatabaseException("Failed to store checkout batch; transaction rolled back.") from e

    def build_lookup_statement(self, limit: int):
        return (
            select(
                repos_table.c.id,
                repos_table.c.name_with_owner,
                repos_table.c.git_url,
                repos_table.c.rust_fraction,
                repos_table.c.latest_commit,
                repos_table.c.is_fork,
                repos_table.c.is_locked,
                repos_table.c.archived_at,
                repos_table.c.pushed_at,
                repos_table.c.updated_at,
            )
            .where(
                repos_table.c.can_clone_repo,
                ~repos_table.c.is_fork,
                ~repos_table.c.is_locked,
                repos_table.c.archived_at.is_(None),
            )
            # Least recently refreshed first so no repository starves
            .order_by(repos_table.c.record_last_updated.asc())
            .limit(limit)
        )

    async def lookup_repositories(self, limit: int) -> List[RepositoryEntity]:
        """
        Returns stored repositories eligible for a checkout pass.

        Raises:
            DatabaseException: If the query fails.
        """
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(self.build_lookup_statement(limit))
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise DatabaseException("Failed to look up repositories.") from e

        return [RepositoryEntity(origin=RepositoryOrigin.DATABASE, **dict(row)) for row in rows]
