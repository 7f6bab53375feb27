"""Conversation loop and component wiring."""
