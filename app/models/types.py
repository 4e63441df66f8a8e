"""Column types shared by the event and queue models."""

import json

from sqlalchemy import JSON, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONDocument(TypeDecorator):
    """JSON column that works across PostgreSQL, MySQL and SQLite.

    PostgreSQL stores JSONB and MySQL stores native JSON; the driver hands
    back structured values. SQLite stores the document as TEXT and this type
    encodes on write.

    With ``decode=False`` text values are returned undecoded so the caller
    can decide what to do with rows that hold malformed JSON.
    """

    impl = JSON
    cache_ok = True

    def __init__(self, decode: bool = True, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.decode = decode

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(Text())
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return json.dumps(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None or not self.decode:
            return value
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8")
        if isinstance(value, str) and dialect.name == "sqlite":
            return json.loads(value)
        return value
