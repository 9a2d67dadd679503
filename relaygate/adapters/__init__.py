"""Clients for external collaborators."""
