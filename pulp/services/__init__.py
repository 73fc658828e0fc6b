"""Domain services for the PULP economy."""
