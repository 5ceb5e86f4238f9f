"""Per-tenant n8n workflow provisioning engine."""
