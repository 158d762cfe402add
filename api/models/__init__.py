"""Central model registry. Import all models so Alembic autodiscover works."""

from api.database import Base  # noqa: F401

from api.models.vendor import Vendor  # noqa: F401
from api.models.subscription import Subscription, Assignment  # noqa: F401
from api.models.service import Service  # noqa: F401
from api.models.invoice import Invoice, InvoiceLineItem  # noqa: F401
from api.models.audit_log import AuditLog  # noqa: F401
