"""
Spritesheet page composition.

Turns packer output into encoded page images: decoded inputs are pasted at
their placements on transparent canvases, padding is alpha bled, and each page
is encoded as PNG. Pages share no state, so they are rendered in parallel.
"""

import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
from PIL import Image

from .alpha_bleed import alpha_bleed
from .packer import Page

logger = logging.getLogger(__name__)


class ImageUtils:
    """Decoding and encoding helpers shared by packed and unpacked uploads."""

    @staticmethod
    def load_image(data: bytes) -> Image.Image:
        """
        Decode image bytes into an RGBA image.

        Raises:
            ValueError: If data cannot be decoded as an image
        """
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (OSError, Image.DecompressionBombError) as e:
            raise ValueError(f"Cannot load image from bytes: {e}") from e
        return ImageUtils.ensure_rgba(image)

    @staticmethod
    def ensure_rgba(image: Image.Image) -> Image.Image:
        """Convert image to RGBA mode if not already."""
        if image.mode != 'RGBA':
            return image.convert('RGBA')
        return image

    @staticmethod
    def encode_png(image: Image.Image, compress_level: int = 6) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, format='PNG', optimize=False, compress_level=compress_level)
        return buffer.getvalue()


@dataclass
class RenderedPage:
    """A composed, bled and encoded spritesheet page."""
    page: Page
    image: Image.Image
    data: bytes

    @property
    def index(self) -> int:
        return self.page.index


class SpritesheetCompositor:
    """Composes packed pages into PNG spritesheets."""

    def __init__(self, padding: int, bleed: bool = True, compress_level: int = 6,
                 max_workers: Optional[int] = None):
        self.padding = padding
        self.bleed = bleed
        self.compress_level = compress_level
        self.max_workers = max_workers

    def compose(self, page: Page, images: Mapping[str, Image.Image]) -> Image.Image:
        """
        Paste every image placed on a page onto a transparent canvas.

        Raises:
            KeyError: If a placement has no matching image
        """
        canvas = Image.new('RGBA', page.size, (0, 0, 0, 0))
        for placement in page.placements:
            sprite = images[placement.id]
            if sprite.size != (placement.width, placement.height):
                raise ValueError(
                    f"Image '{placement.id}' is {sprite.size[0]}x{sprite.size[1]}, "
                    f"placed as {placement.width}x{placement.height}"
                )
            # No mask, so pixels are copied rather than composited
            canvas.paste(ImageUtils.ensure_rgba(sprite), (placement.x, placement.y))
        return canvas

    def render_page(self, page: Page, images: Mapping[str, Image.Image]) -> RenderedPage:
        canvas = self.compose(page, images)
        if self.bleed and self.padding > 0:
            pixels = np.asarray(canvas, dtype=np.uint8)
            canvas = Image.fromarray(alpha_bleed(pixels, page.placements, self.padding))

        data = ImageUtils.encode_png(canvas, self.compress_level)
        logger.debug(
            f"Rendered page {page.index}: {page.width}x{page.height}, "
            f"{len(page.placements)} images, {len(data)} bytes"
        )
        return RenderedPage(page=page, image=canvas, data=data)

    def render_pages(self, pages: List[Page], images: Mapping[str, Image.Image]) -> List[RenderedPage]:
        """Render pages in parallel, returning them in page order."""
        if not pages:
            return []

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="spritesheet") as executor:
            return list(executor.map(lambda page: self.render_page(page, images), pages))


def decode_images(sources: Mapping[str, bytes]) -> Tuple[Dict[str, Image.Image], Dict[str, str]]:
    """
    Decode many images, collecting failures instead of raising.

    Returns:
        (decoded images by id, error message by id)
    """
    images: Dict[str, Image.Image] = {}
    errors: Dict[str, str] = {}
    for identity, data in sources.items():
        try:
            images[identity] = ImageUtils.load_image(data)
        except ValueError as e:
            errors[identity] = str(e)
    return images, errors
