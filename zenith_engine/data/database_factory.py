"""
Database factory for creating SQLAlchemy engines.

Supports multiple database backends:
- SQLite: Development and testing (foreign keys enforced per connection)
- PostgreSQL: Production deployment

Example:
    from zenith_engine.data.database_factory import DatabaseFactory

    # In-memory SQLite (tests)
    engine = DatabaseFactory.create_engine('sqlite', {'database': ':memory:'})

    # From the configured URL
    engine = DatabaseFactory.create_engine_from_url(get_database_url())
"""
from pathlib import Path
from typing import Any, Dict, Literal

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from zenith_engine.utils.logging_config import get_data_logger

logger = get_data_logger('DATABASE.FACTORY')


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Switch on FK enforcement (and so ON DELETE CASCADE) for every connection."""

    @event.listens_for(engine, 'connect')
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()


class DatabaseFactory:
    """
    Factory for creating database engines with proper configuration.

    Abstracts database-specific setup to support multiple backends
    while maintaining a consistent interface.
    """

    @staticmethod
    def create_engine(
        db_type: Literal['sqlite', 'postgresql'],
        config: Dict[str, Any]
    ) -> Engine:
        """
        Create SQLAlchemy engine based on database type and configuration.

        Args:
            db_type: Database backend type ('sqlite' or 'postgresql')
            config: Database-specific configuration dictionary

        Returns:
            Configured SQLAlchemy Engine

        Raises:
            ValueError: If db_type is unsupported or config is invalid
        """
        if db_type == 'sqlite':
            return DatabaseFactory._create_sqlite_engine(config)
        elif db_type == 'postgresql':
            return DatabaseFactory._create_postgresql_engine(config)
        else:
            raise ValueError(
                f"Unsupported database type: {db_type}. "
                f"Supported types: 'sqlite', 'postgresql'"
            )

    @staticmethod
    def create_engine_from_url(url: str, echo: bool = False) -> Engine:
        """
        Create an engine from a full database URL.

        Args:
            url: SQLAlchemy URL (sqlite:///..., postgresql://...)
            echo: Enable SQL logging

        Returns:
            Configured SQLAlchemy Engine
        """
        parsed = make_url(url)
        if parsed.get_backend_name() == 'sqlite':
            return DatabaseFactory._create_sqlite_engine({
                'database': parsed.database or ':memory:',
                'echo': echo,
            })

        logger.info(f"Creating {parsed.get_backend_name()} engine: {parsed.host}/{parsed.database}")
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            echo=echo,
        )

    @staticmethod
    def _create_sqlite_engine(config: Dict[str, Any]) -> Engine:
        """
        Create SQLite engine for development and testing.

        Args:
            config: SQLite configuration
                - database: Path to database file or ':memory:' (required)
                - echo: Enable SQL logging (optional, default: False)

        Returns:
            SQLite engine with foreign keys enforced
        """
        database_path = config.get('database')
        if not database_path:
            raise ValueError("SQLite config must include 'database' path")

        echo = config.get('echo', False)

        if database_path == ':memory:':
            # One shared connection so every session sees the same database
            connection_string = 'sqlite:///:memory:'
            poolclass = StaticPool
            logger.info("Creating in-memory SQLite engine")
        else:
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
            connection_string = f'sqlite:///{database_path}'
            poolclass = None
            logger.info(f"Creating SQLite engine: {database_path}")

        engine = create_engine(
            connection_string,
            echo=echo,
            poolclass=poolclass,
            # Jobs may run on a worker thread different from the creator
            connect_args={'check_same_thread': False},
        )
        _enable_sqlite_foreign_keys(engine)

        logger.info("SQLite engine created successfully")
        return engine

    @staticmethod
    def _create_postgresql_engine(config: Dict[str, Any]) -> Engine:
        """
        Create PostgreSQL engine with connection pooling for production.

        Args:
            config: PostgreSQL configuration
                - host, port, user, password, database (required)
                - pool_size: Connection pool size (optional, default: 10)
                - max_overflow: Max overflow connections (optional, default: 20)
                - pool_timeout: Pool timeout in seconds (optional, default: 30)
                - pool_recycle: Connection recycle time (optional, default: 3600)
                - echo: Enable SQL logging (optional, default: False)

        Returns:
            PostgreSQL engine with connection pooling
        """
        required_fields = ['host', 'port', 'user', 'password', 'database']
        missing_fields = [f for f in required_fields if f not in config]
        if missing_fields:
            raise ValueError(
                f"PostgreSQL config missing required fields: {missing_fields}"
            )

        host = config['host']
        port = config['port']
        user = config['user']
        database = config['database']
        pool_size = config.get('pool_size', 10)
        max_overflow = config.get('max_overflow', 20)

        connection_string = (
            f"postgresql://{user}:{config['password']}@{host}:{port}/{database}"
        )

        logger.info(f"Creating PostgreSQL engine: {user}@{host}:{port}/{database}")
        logger.info(f"Connection pool: size={pool_size}, max_overflow={max_overflow}")

        return create_engine(
            connection_string,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=config.get('pool_timeout', 30),
            pool_recycle=config.get('pool_recycle', 3600),
            pool_pre_ping=True,
            echo=config.get('echo', False),
        )

    @staticmethod
    def create_session_maker(engine: Engine) -> sessionmaker:
        """
        Create session maker from engine.

        Objects stay readable after commit so domain conversion can happen
        outside the session.
        """
        return sessionmaker(bind=engine, expire_on_commit=False)
