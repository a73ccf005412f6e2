from sqlalchemy import MetaData

from racky.db.db import Base


def get_base_metadata() -> MetaData:
    """Get the Base metadata for Alembic migrations"""

    # Import models to register them with Base.metadata

    from racky.jobs.models import Job, JobHistory, QueueState  # noqa: F401
    from racky.monitoring.models import QueueHealth  # noqa: F401

    return Base.metadata
