"""Negotiation session record and its durable store."""

from .models import NegotiationSession
from .store import SessionStore, get_session_store

__all__ = [
    "NegotiationSession",
    "SessionStore",
    "get_session_store",
]
