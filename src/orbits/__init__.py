"""Orbits: local contacts and Messages sync for the Orbits personal CRM."""

__version__ = "0.1.0"
