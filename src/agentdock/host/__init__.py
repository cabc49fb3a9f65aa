"""Host side: container lifecycle, stream reconciliation, readiness and health."""
