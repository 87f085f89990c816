"""Column types shared by the models so the same schema runs on PostgreSQL and SQLite."""
from sqlalchemy import JSON, Uuid

# Addresses, payment results and audit values; JSONB would tie us to PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid(as_uuid=True)
