from app.models.base import Base  # noqa: F401

from app.models.listing import Listing  # noqa: F401
from app.models.portal import Portal  # noqa: F401
from app.models.publication import Publication  # noqa: F401
from app.models.job import PortalJob  # noqa: F401
from app.models.sync_log import SyncLogEntry  # noqa: F401
