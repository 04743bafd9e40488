"""Backends that execute query plans: in-memory and remote HTTP."""
