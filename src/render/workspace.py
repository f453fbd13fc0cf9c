"""Per-run scratch directories for rendering."""

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from src.config import get_settings

logger = logging.getLogger(__name__)


class RenderWorkspace:
    """A unique temporary directory owned by exactly one render run."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.clips_dir = self.path / "clips"
        self.output_dir = self.path / "output"
        self.clips_dir.mkdir(exist_ok=True)
        self.output_dir.mkdir(exist_ok=True)

    def clip_path(self, index: int, suffix: str = ".mp4") -> str:
        return str(self.clips_dir / f"scene_{index:04d}{suffix}")

    def output_path(self, name: str) -> str:
        return str(self.output_dir / name)

    def file_path(self, name: str) -> str:
        return str(self.path / name)


@asynccontextmanager
async def render_workspace(
    prefix: str = "adreel_render_",
    root: Optional[str] = None,
) -> AsyncIterator[RenderWorkspace]:
    """Create a scratch directory and remove it on exit, whatever happened.

    Args:
        prefix: Directory name prefix
        root: Parent directory (defaults to ``render_workspace_root``, then
            the system temp dir)
    """
    root = root or get_settings().render_workspace_root or None
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    temp_dir = tempfile.mkdtemp(prefix=prefix, dir=root)
    logger.debug(f"[WORKSPACE] Created {temp_dir}")
    try:
        yield RenderWorkspace(temp_dir)
    finally:
        await asyncio.to_thread(shutil.rmtree, temp_dir, True)
        logger.debug(f"[WORKSPACE] Removed {temp_dir}")
