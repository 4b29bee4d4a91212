# Import all models so Alembic and metadata.create_all see every table
from dispatch_service.models.database import Base  # noqa: F401
from dispatch_service.models.dispatch import DispatchRecord, MicrogridDispatchCounter  # noqa: F401
