from typing import Any

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin, UUIDMixin


class Project(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Brand settings applied to every rendered format
    brand_logo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    logo_position: Mapped[str] = mapped_column(String(20), default="top-left")
    logo_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    logo_height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Output formats ("WIDTHxHEIGHT") for videos without their own list
    default_formats: Mapped[list[Any]] = mapped_column(JSON, default=list)

    # Relationships
    bulk_videos: Mapped[list["BulkVideo"]] = relationship(  # noqa: F821
        "BulkVideo", back_populates="project", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Project {self.name}>"
