"""EventRelay operations API."""
