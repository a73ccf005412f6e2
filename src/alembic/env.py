import logging

from loguru import logger
from sqlalchemy import engine_from_config, pool

from alembic import context
from racky.db.base_model import get_base_metadata
from racky.settings.manager import settings_manager
from racky.utils.logging import route_stdlib_logger

route_stdlib_logger("alembic", "DATABASE", logging.INFO)

# Alembic configuration
config = context.config
if not config.get_main_option("sqlalchemy.url") or config.cmd_opts is not None:
    # CLI invocations follow the configured database; run_migrations() passes its own url.
    config.set_main_option("sqlalchemy.url", str(settings_manager.settings.database.host))

# Set MetaData object for autogenerate support
target_metadata = get_base_metadata()


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,  # Compare column types
            compare_server_default=True,  # Compare default values
            render_as_batch=True,  # Enable batch operations (sqlite)
        )

        try:
            with context.begin_transaction():
                logger.debug("Starting migrations...")
                context.run_migrations()
                logger.debug("Migrations completed successfully")
        except Exception as e:
            logger.error(f"Unexpected error during migration: {e}")
            raise


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
