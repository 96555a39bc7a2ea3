from .queue_lead import QueueLead
from .queue_audit_entry import QueueAuditEntry
from .queue_settings import QueueSettingsRecord

__all__ = ["QueueLead", "QueueAuditEntry", "QueueSettingsRecord"]
