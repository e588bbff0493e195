"""Foundational components: configuration and the capture session context."""
