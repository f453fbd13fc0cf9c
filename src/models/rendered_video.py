import uuid

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin, UUIDMixin


class RenderedVideo(Base, UUIDMixin, TimestampMixin):
    """Output of one (bulk video, format) render. At most one row per pair."""

    __tablename__ = "rendered_videos"
    __table_args__ = (UniqueConstraint("bulk_video_id", "format", name="uq_rendered_video_format"),)

    bulk_video_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bulk_videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    format: Mapped[str] = mapped_column(String(20), nullable=False)

    # Status: pending, rendering, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    bulk_video: Mapped["BulkVideo"] = relationship(  # noqa: F821
        "BulkVideo", back_populates="rendered_videos"
    )

    def __repr__(self) -> str:
        return f"<RenderedVideo {self.bulk_video_id} {self.format} ({self.status})>"
