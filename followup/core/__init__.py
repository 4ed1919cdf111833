"""Core negotiation logic: identity, errors, scheduling and sessions."""
