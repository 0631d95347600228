"""Contact synchronization core -- CRM contacts reconciled into the local store.

Provides:
- WealthboxClient: Paginated CRM API client with 429 backoff
- IdentityResolver: Primary email, organization and collision policy
- ReconciliationEngine: Full sync and single-event sync
- WebhookVerifier / WebhookProcessor: Signed webhook intake
- ContactStore / ContactRepository: Persistence interface and SQLAlchemy implementation
- SyncScheduler: Cron trigger for full sync

Architecture: the engine receives client, resolver and store at construction;
nothing in this package holds module-level service instances.
"""

from src.contact_sync.contacts.client import WealthboxClient
from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.identity import IdentityResolver
from src.contact_sync.contacts.repository import ContactRepository
from src.contact_sync.contacts.scheduler import SyncScheduler
from src.contact_sync.contacts.store import ContactStore
from src.contact_sync.contacts.webhooks import WebhookProcessor, WebhookVerifier

__all__ = [
    "WealthboxClient",
    "IdentityResolver",
    "ReconciliationEngine",
    "WebhookVerifier",
    "WebhookProcessor",
    "ContactStore",
    "ContactRepository",
    "SyncScheduler",
]
