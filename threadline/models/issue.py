from __future__ import annotations

from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON, TypeDecorator

from threadline.db import Base
from threadline.services.config_service import TrackerConfigService

EMBEDDING_DIMENSIONS = TrackerConfigService.get_embedding_dimensions()


class Embedding(TypeDecorator):
    """pgvector column on PostgreSQL, JSON float list everywhere else."""

    impl = JSON(none_as_null=True)
    cache_ok = True

    class Comparator(TypeDecorator.Comparator):
        def cosine_distance(self, other):
            return self.op("<=>", return_type=Float)(other)

    comparator_factory = Comparator

    def __init__(self, dimensions: int) -> None:
        super().__init__()
        self.dimensions = dimensions

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Vector(self.dimensions))
        return dialect.type_descriptor(JSON(none_as_null=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return [float(v) for v in value]

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return [float(v) for v in value]


class Issue(Base):
    __tablename__ = "issues"

    id = Column(String(20), primary_key=True)
    title = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="task", server_default="task")
    status = Column(String(20), nullable=False, default="open", server_default="open")
    priority = Column(Integer, nullable=False, default=3, server_default="3")
    labels = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list)
    summary = Column(Text, nullable=False, default="", server_default="")
    embedding = Column(Embedding(EMBEDDING_DIMENSIONS), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    messages = relationship(
        "ThreadMessage",
        back_populates="issue",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ThreadMessage.id",
    )

    # Indexes for common queries
    __table_args__ = (
        Index("idx_status", "status"),
        Index(
            "idx_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ).ddl_if(dialect="postgresql"),
    )
