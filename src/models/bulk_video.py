import uuid
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin, UUIDMixin


class BulkVideo(Base, UUIDMixin, TimestampMixin):
    """One generated video of a bulk project (one row of the input sheet)."""

    __tablename__ = "bulk_videos"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    row_index: Mapped[int] = mapped_column(Integer, default=0)
    name: Mapped[str] = mapped_column(String(255), default="")
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Status: pending, generating, completed, failed
    status: Mapped[str] = mapped_column(String(50), default="pending", index=True)

    # Overrides the project's default_formats when non-empty
    custom_formats: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)

    # Relationships
    project: Mapped["Project"] = relationship("Project", back_populates="bulk_videos")  # noqa: F821
    scenes: Mapped[list["BulkVideoScene"]] = relationship(
        "BulkVideoScene",
        back_populates="bulk_video",
        cascade="all, delete-orphan",
        order_by="BulkVideoScene.order",
    )
    rendered_videos: Mapped[list["RenderedVideo"]] = relationship(  # noqa: F821
        "RenderedVideo", back_populates="bulk_video", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<BulkVideo {self.id} ({self.status})>"


class BulkVideoScene(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "bulk_video_scenes"

    bulk_video_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bulk_videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Generated clip for this scene
    animation_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="pending")

    bulk_video: Mapped["BulkVideo"] = relationship("BulkVideo", back_populates="scenes")

    def __repr__(self) -> str:
        return f"<BulkVideoScene {self.order} ({self.status})>"
