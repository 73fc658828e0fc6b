"""HTTP API for the PULP economy."""
