"""
On-disk storage for template sources and compiled generator artifacts.

Layout::

    <TEMPLATES_DIR>/<slug>/template.<ext>         uploaded template
    <TEMPLATES_DIR>/<slug>/generator.py           compiled generator
    <TEMPLATES_DIR>/<slug>/generator.<ctx>.py     context-specific generator

Artifacts are written to a temp file in the same directory and moved into
place with ``os.replace``, so readers see either the previous artifact or
the new one.
"""
from __future__ import annotations

import logging
import os
import re
import secrets
from pathlib import Path
from typing import Optional

import aiofiles

from app.config import settings
from app.services.exceptions import NotFound
from app.services.skeleton import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,199}$")
SOURCE_STEMS = ("template", "source")


def validate_slug(slug: str) -> str:
    if not _SLUG_RE.match(slug) or ".." in slug:
        raise NotFound(f"Invalid template slug '{slug}'")
    return slug


def _context_suffix(context_key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "-", context_key)[:100]


class ArtifactStore:
    """Filesystem access rooted at one templates directory."""

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root or settings.TEMPLATES_DIR)

    def template_dir(self, slug: str) -> Path:
        return self.root / validate_slug(slug)

    def exists(self, slug: str) -> bool:
        return self.template_dir(slug).is_dir()

    # ------------------------------------------------------------------
    # Template sources
    # ------------------------------------------------------------------

    def find_source(self, slug: str) -> Optional[Path]:
        """First ``template.*`` / ``source.*`` file with a supported extension."""
        directory = self.template_dir(slug)
        if not directory.is_dir():
            return None
        for stem in SOURCE_STEMS:
            for ext in SUPPORTED_EXTENSIONS:
                candidate = directory / f"{stem}{ext}"
                if candidate.is_file():
                    return candidate
        return None

    async def save_source(self, slug: str, extension: str, data: bytes) -> Path:
        """Store an uploaded template, replacing any previous source."""
        ext = extension.lower() if extension.startswith(".") else f".{extension.lower()}"
        if ext not in SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported template format: {ext}")

        directory = self.template_dir(slug)
        directory.mkdir(parents=True, exist_ok=True)
        previous = self.find_source(slug)
        target = directory / f"template{ext}"
        await self._atomic_write(target, data)
        if previous is not None and previous != target:
            previous.unlink(missing_ok=True)
        logger.info("Saved template source %s (%d bytes)", target, len(data))
        return target

    # ------------------------------------------------------------------
    # Generator artifacts
    # ------------------------------------------------------------------

    def artifact_path(self, slug: str, context_key: Optional[str] = None) -> Path:
        name = f"generator.{_context_suffix(context_key)}.py" if context_key else "generator.py"
        return self.template_dir(slug) / name

    def has_artifact(self, slug: str, context_key: Optional[str] = None) -> bool:
        if context_key and self.artifact_path(slug, context_key).is_file():
            return True
        return self.artifact_path(slug).is_file()

    async def read_artifact(self, slug: str, context_key: Optional[str] = None) -> Optional[str]:
        """Context-specific artifact if present, else the slug-wide one, else None."""
        candidates = [self.artifact_path(slug)]
        if context_key:
            candidates.insert(0, self.artifact_path(slug, context_key))
        for path in candidates:
            if path.is_file():
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    return await f.read()
        return None

    async def write_artifact(self, slug: str, source: str, context_key: Optional[str] = None) -> str:
        """Fully replace the generator for (slug, context_key); returns the artifact ref."""
        path = self.artifact_path(slug, context_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._atomic_write(path, source.encode("utf-8"))
        logger.info("Wrote generator artifact %s (%d chars)", path, len(source))
        return str(path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _atomic_write(target: Path, data: bytes) -> None:
        tmp = target.with_name(f".{target.name}.{secrets.token_hex(4)}.tmp")
        try:
            async with aiofiles.open(tmp, "wb") as out:
                await out.write(data)
                await out.flush()
            os.replace(tmp, target)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
