"""HTTP API for the Persona backend."""
