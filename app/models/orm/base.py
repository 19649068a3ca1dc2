from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# JSONB on PostgreSQL, plain JSON everywhere else (e.g. SQLite in tests)
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class CustomBase:
    def __repr__(self) -> str:
        class_name = self.__class__.__name__

        # Mapped attribute names, which differ from column names for "metadata"
        columns = [(attr.key, getattr(self, attr.key)) for attr in self.__mapper__.column_attrs]

        column_str = ", ".join(f"{name}={repr(value)}" for name, value in columns)

        return f"{class_name}({column_str})"


Base = declarative_base(cls=CustomBase)
