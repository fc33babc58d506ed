"""Persistence for user records: ORM tables, engine helpers, and repository."""
