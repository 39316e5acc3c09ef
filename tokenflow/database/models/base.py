from sqlalchemy import MetaData
from sqlalchemy.orm import declarative_base

# Define naming convention
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "pk": "pk_%(table_name)s"
}

# Tables are unqualified; the schema is selected per session via search_path
metadata = MetaData(naming_convention=convention)
IngestionBase = declarative_base(metadata=metadata)
