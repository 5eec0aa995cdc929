"""
SQLAlchemy ORM models for the DocForge database.

Metadata payloads live in JSON columns; only the fields used for lookups
and ordering are promoted to real columns.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    JSON,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Customer(Base):
    """Customer owning documents; maps to one assistant workspace."""

    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    workspace_slug = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    documents = relationship("Document", back_populates="customer", cascade="all, delete-orphan")


class Template(Base):
    """Template metadata keyed by slug (inferred purpose, data needs, generation stats)."""

    __tablename__ = "template_metadata"

    slug = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    workspace_slug = Column(String(255), nullable=True)
    metadata_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Document(Base):
    """Per-document metadata plus its ranked template relevance list."""

    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String(512), nullable=False)
    metadata_json = Column(JSON, nullable=False, default=dict)
    # [{template_slug, template_name, score, reasoning}], top entries by score
    template_relevance = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    # Relationships
    customer = relationship("Customer", back_populates="documents")
