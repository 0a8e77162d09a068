"""Relational storage: tables, engine policy and migrations."""
