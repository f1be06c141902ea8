"""Shared defaults for payflow."""

DEFAULT_APPROVAL_TIMEOUT_HOURS = 24
DEFAULT_CONFLICT_RETRIES = 1
DEFAULT_PERSISTENCE_TIMEOUT = 10.0
DEFAULT_EVENT_TOPIC = "workflow-events"
DEFAULT_CANCEL_ROLES = ("ORG_ADMIN", "SUPER_ADMIN")
