from src.models.base import Base
from src.models.bulk_video import BulkVideo, BulkVideoScene
from src.models.project import Project
from src.models.rendered_video import RenderedVideo

__all__ = [
    "Base",
    "Project",
    "BulkVideo",
    "BulkVideoScene",
    "RenderedVideo",
]
