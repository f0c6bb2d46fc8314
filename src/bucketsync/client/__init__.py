"""Client-side agent: local catalog, transfer tracking and the sync engine."""
