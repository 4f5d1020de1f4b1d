"""
Rectangle packing for spritesheet pages.

A shelf packer that places sized rectangles onto power-of-two pages, growing
the open page when needed and opening new pages once the open one is full.
Knows nothing about pixels, hashes or uploads.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def is_power_of_two(n: int) -> bool:
    """Check if number is a power of two."""
    return n > 0 and (n & (n - 1)) == 0


@dataclass(frozen=True)
class InputRect:
    """A rectangle submitted to a packing run."""
    id: str
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Rectangle '{self.id}' must have positive dimensions, got {self.width}x{self.height}"
            )


@dataclass(frozen=True)
class ImageSlice:
    """Region of a page occupied by one packed image."""
    x: int
    y: int
    width: int
    height: int

    @property
    def offset(self) -> tuple[int, int]:
        return (self.x, self.y)

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)


@dataclass(frozen=True)
class Placement:
    """Position assigned to one rectangle within a page."""
    id: str
    page_index: int
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def intersects(self, other: "Placement", padding: int = 0) -> bool:
        """Check if this placement, grown by padding, touches another one."""
        return not (self.right + padding <= other.x or other.right + padding <= self.x or
                    self.bottom + padding <= other.y or other.bottom + padding <= self.y)

    def to_slice(self) -> ImageSlice:
        return ImageSlice(self.x, self.y, self.width, self.height)


@dataclass
class PackingConstraints:
    """
    Geometric limits applied to every page of a packing run.

    Padding separates rectangles from each other and from the page border, so
    a lone w x h rectangle needs a page of at least (w + 2*padding) x
    (h + 2*padding). A 64x64 image with padding 2 therefore cannot share a
    64-high page with anything and lands on a 128x128 page.
    """
    padding: int = 1
    min_size: int = 128
    max_size: int = 1024

    def __post_init__(self):
        """Validate constraints after initialization."""
        if self.padding < 0:
            raise ValueError(f"padding cannot be negative, got {self.padding}")
        if not is_power_of_two(self.min_size) or not is_power_of_two(self.max_size):
            raise ValueError(
                f"page sizes must be powers of two, got min={self.min_size} max={self.max_size}"
            )
        if self.min_size > self.max_size:
            raise ValueError(
                f"min page size {self.min_size} exceeds max page size {self.max_size}"
            )


@dataclass
class Shelf:
    """A horizontal band of a page; its height is set by its first rectangle."""
    y: int
    height: int
    cursor: int


@dataclass
class Page:
    """One output container of a packing run."""
    index: int
    width: int
    height: int
    placements: List[Placement] = field(default_factory=list)
    shelves: List[Shelf] = field(default_factory=list)
    grow_width_next: bool = True

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def try_place(self, rect: InputRect, padding: int) -> Optional[Placement]:
        """
        Place a rectangle on the first shelf that accommodates it, opening a
        new shelf below the last one if needed.

        Returns:
            The new placement, or None if the page has no room at its current size
        """
        for shelf in self.shelves:
            if rect.height <= shelf.height and shelf.cursor + rect.width + padding <= self.width:
                placement = Placement(rect.id, self.index, shelf.cursor, shelf.y,
                                      rect.width, rect.height)
                shelf.cursor += rect.width + padding
                self.placements.append(placement)
                return placement

        if self.shelves:
            last = self.shelves[-1]
            y = last.y + last.height + padding
        else:
            y = padding

        if y + rect.height + padding > self.height or padding + rect.width + padding > self.width:
            return None

        self.shelves.append(Shelf(y=y, height=rect.height, cursor=padding + rect.width + padding))
        placement = Placement(rect.id, self.index, padding, y, rect.width, rect.height)
        self.placements.append(placement)
        return placement

    def grow(self, max_size: int) -> bool:
        """
        Double one dimension of the page, alternating width and height.

        Returns:
            False if both dimensions are already at the maximum
        """
        if self.width >= max_size and self.height >= max_size:
            return False

        grow_width = self.grow_width_next
        if grow_width and self.width >= max_size:
            grow_width = False
        elif not grow_width and self.height >= max_size:
            grow_width = True

        if grow_width:
            self.width = min(self.width * 2, max_size)
        else:
            self.height = min(self.height * 2, max_size)

        self.grow_width_next = not grow_width
        return True

    def grow_to_fit(self, rect: InputRect, padding: int, max_size: int) -> Optional[Placement]:
        """
        Grow the page step by step until the rectangle fits.

        The growth is kept only if the rectangle was placed; otherwise the page
        returns to its previous size.
        """
        previous = (self.width, self.height, self.grow_width_next)
        while self.grow(max_size):
            placement = self.try_place(rect, padding)
            if placement is not None:
                return placement

        self.width, self.height, self.grow_width_next = previous
        return None


class PackingError(Exception):
    """Base exception for packing errors."""


class PackingInfeasibleError(PackingError):
    """Raised (and collected) when a rectangle cannot fit any allowed page."""

    def __init__(self, rect: InputRect, constraints: PackingConstraints):
        super().__init__(
            f"'{rect.id}' ({rect.width}x{rect.height} plus padding {constraints.padding}) "
            f"does not fit a {constraints.max_size}x{constraints.max_size} page"
        )
        self.rect = rect
        self.rect_id = rect.id


@dataclass
class PackResult:
    """Pages produced by a packing run plus the rectangles that did not fit."""
    pages: List[Page] = field(default_factory=list)
    failures: Dict[str, PackingInfeasibleError] = field(default_factory=dict)

    @property
    def placements(self) -> Dict[str, Placement]:
        """All placements keyed by rectangle identifier."""
        return {
            placement.id: placement
            for page in self.pages
            for placement in page.placements
        }


class RectanglePacker:
    """Deterministic shelf packer for power-of-two pages."""

    def __init__(self, constraints: Optional[PackingConstraints] = None):
        self.constraints = constraints or PackingConstraints()

    def pack(self, rects: Iterable[InputRect]) -> PackResult:
        """
        Pack rectangles into as few pages as the greedy order allows.

        Args:
            rects: Rectangles with unique identifiers

        Returns:
            PackResult with ordered pages and per-rectangle failures

        Raises:
            ValueError: If two rectangles share an identifier
        """
        rects = list(rects)
        ids = [rect.id for rect in rects]
        if len(set(ids)) != len(ids):
            raise ValueError("Rectangle identifiers must be unique")

        padding = self.constraints.padding
        max_size = self.constraints.max_size
        result = PackResult()

        ordered = sorted(rects, key=lambda r: (-r.height, -r.width, r.id))
        logger.debug(f"Packing {len(ordered)} rectangles")

        for rect in ordered:
            if rect.width + 2 * padding > max_size or rect.height + 2 * padding > max_size:
                error = PackingInfeasibleError(rect, self.constraints)
                logger.warning(f"Cannot pack {error}")
                result.failures[rect.id] = error
                continue

            if any(page.try_place(rect, padding) for page in result.pages):
                continue

            placed = bool(result.pages) and (
                result.pages[-1].grow_to_fit(rect, padding, max_size) is not None
            )

            while not placed:
                if not result.pages or result.pages[-1].placements:
                    page = Page(index=len(result.pages),
                                width=self.constraints.min_size,
                                height=self.constraints.min_size)
                    result.pages.append(page)
                page = result.pages[-1]
                placed = page.try_place(rect, padding) is not None
                if not placed and not page.grow(max_size):
                    # Unreachable after the size check above
                    raise PackingError(f"Failed to place '{rect.id}' on an empty page")

        logger.debug(
            f"Packed {len(ordered) - len(result.failures)} rectangles into {len(result.pages)} pages"
        )
        return result
