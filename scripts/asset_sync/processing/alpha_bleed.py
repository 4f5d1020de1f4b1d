"""
Alpha bleeding for packed spritesheet pages.

Copies the colour of each placed image's edge pixels outward into the padding
around it. Texture filtering blends padding pixels into the visible image, so
leaving the transparent padding black produces dark fringes when the sheet is
scaled. The colour comes from the nearest pixel with alpha > 0 along the edge
row or column, so images with a transparent border still bleed their visible
colour. Only RGB is written; alpha and the placed pixels themselves are left
as they are.
"""

from typing import Iterable

import numpy as np

from .packer import Placement


def alpha_bleed(pixels: np.ndarray, placements: Iterable[Placement], padding: int) -> np.ndarray:
    """
    Bleed edge colours of every placement into its padding ring.

    Args:
        pixels: Page buffer of shape (height, width, 4), dtype uint8
        placements: Placements on this page
        padding: Width of the ring to fill around each placement

    Returns:
        A new buffer; the input is not modified
    """
    if pixels.ndim != 3 or pixels.shape[2] != 4:
        raise ValueError(f"Expected an RGBA buffer, got shape {pixels.shape}")

    result = pixels.copy()
    placements = list(placements)
    if padding <= 0 or not placements:
        return result

    page_height, page_width = pixels.shape[:2]

    interior = np.zeros((page_height, page_width), dtype=bool)
    for p in placements:
        interior[p.y:p.bottom, p.x:p.right] = True

    # Distance from each ring pixel to the placement that currently owns it
    best = np.full((page_height, page_width), np.iinfo(np.int32).max, dtype=np.int32)

    for p in placements:
        x0 = max(p.x - padding, 0)
        y0 = max(p.y - padding, 0)
        x1 = min(p.right + padding, page_width)
        y1 = min(p.bottom + padding, page_height)

        # Only pixels with alpha > 0 carry a colour worth bleeding
        opaque = pixels[p.y:p.bottom, p.x:p.right, 3] > 0
        if not opaque.any():
            continue

        row_any = opaque.any(axis=1)
        col_any = opaque.any(axis=0)
        row_first = opaque.argmax(axis=1)
        row_last = p.width - 1 - opaque[:, ::-1].argmax(axis=1)
        col_first = opaque.argmax(axis=0)
        col_last = p.height - 1 - opaque[::-1, :].argmax(axis=0)

        xs = np.arange(x0, x1)
        ys = np.arange(y0, y1)
        clamped_x = np.clip(xs, p.x, p.right - 1)
        clamped_y = np.clip(ys, p.y, p.bottom - 1)

        # Chebyshev distance to the placement's nearest edge pixel
        dist = np.maximum(np.abs(ys - clamped_y)[:, None], np.abs(xs - clamped_x)[None, :])

        # From the clamped edge pixel, walk inward along its row (left and
        # right of the placement) or its column (above and below) to the
        # first opaque pixel
        local_y, local_x = np.broadcast_arrays(
            (clamped_y - p.y)[:, None], (clamped_x - p.x)[None, :]
        )
        left = (xs < p.x)[None, :]
        right = (xs >= p.right)[None, :]
        above = (ys < p.y)[:, None]
        below = (ys >= p.bottom)[:, None]

        across = (left | right) & row_any[local_y]
        down = ~across & (above | below) & col_any[local_x]

        src_x = np.where(across & left, row_first[local_y], local_x)
        src_x = np.where(across & right, row_last[local_y], src_x)
        src_y = np.where(down & above, col_first[local_x], local_y)
        src_y = np.where(down & below, col_last[local_x], src_y)

        region_best = best[y0:y1, x0:x1]
        mask = (dist < region_best) & ~interior[y0:y1, x0:x1] & (across | down)
        if not mask.any():
            continue

        region_best[mask] = dist[mask]
        source_rgb = pixels[p.y + src_y, p.x + src_x, :3]
        result[y0:y1, x0:x1, :3][mask] = source_rgb[mask]

    return result
