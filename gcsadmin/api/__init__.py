"""Management API transport: TLS policy, client kernel and wire models."""
