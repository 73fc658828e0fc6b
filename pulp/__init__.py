"""PULP economy service for the disc golf league."""

__version__ = "0.1.0"
