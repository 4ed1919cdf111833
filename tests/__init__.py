"""Tests for the follow-up coordinator."""
