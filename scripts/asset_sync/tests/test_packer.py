"""
Tests for the rectangle packer.
"""

import random
import unittest

import pytest

from asset_sync.processing.packer import (
    InputRect, Page, PackingConstraints, PackingInfeasibleError, Placement,
    RectanglePacker, is_power_of_two
)


def assert_valid_packing(result, rects, constraints):
    """Check placement uniqueness, padding separation and page bounds."""
    placed_ids = [p.id for page in result.pages for p in page.placements]
    assert len(placed_ids) == len(set(placed_ids))
    assert set(placed_ids) | set(result.failures) == {r.id for r in rects}

    padding = constraints.padding
    for page in result.pages:
        assert is_power_of_two(page.width) and is_power_of_two(page.height)
        assert constraints.min_size <= page.width <= constraints.max_size
        assert constraints.min_size <= page.height <= constraints.max_size

        for placement in page.placements:
            assert placement.page_index == page.index
            assert placement.x >= padding and placement.y >= padding
            assert placement.right + padding <= page.width
            assert placement.bottom + padding <= page.height

        for i, a in enumerate(page.placements):
            for b in page.placements[i + 1:]:
                assert not a.intersects(b, padding), f"{a} overlaps {b}"


class TestPackingConstraints(unittest.TestCase):
    """Test constraint validation."""

    def test_defaults_are_valid(self):
        constraints = PackingConstraints()
        self.assertEqual(constraints.padding, 1)

    def test_negative_padding_rejected(self):
        with self.assertRaises(ValueError):
            PackingConstraints(padding=-1)

    def test_non_power_of_two_rejected(self):
        with self.assertRaises(ValueError):
            PackingConstraints(min_size=100, max_size=512)

    def test_min_greater_than_max_rejected(self):
        with self.assertRaises(ValueError):
            PackingConstraints(min_size=1024, max_size=512)

    def test_rect_requires_positive_dimensions(self):
        with self.assertRaises(ValueError):
            InputRect("empty", 0, 10)


class TestPage(unittest.TestCase):
    """Test page shelf placement and growth."""

    def test_grow_alternates_axes(self):
        page = Page(index=0, width=64, height=64)

        self.assertTrue(page.grow(256))
        self.assertEqual(page.size, (128, 64))
        self.assertTrue(page.grow(256))
        self.assertEqual(page.size, (128, 128))
        self.assertTrue(page.grow(256))
        self.assertEqual(page.size, (256, 128))

    def test_grow_stops_at_max(self):
        page = Page(index=0, width=128, height=64)

        self.assertTrue(page.grow(128))
        self.assertEqual(page.size, (128, 128))
        self.assertFalse(page.grow(128))

    def test_try_place_opens_new_shelf(self):
        page = Page(index=0, width=64, height=64)

        first = page.try_place(InputRect("a", 40, 20), padding=0)
        second = page.try_place(InputRect("b", 40, 20), padding=0)

        self.assertEqual((first.x, first.y), (0, 0))
        self.assertEqual((second.x, second.y), (0, 20))

    def test_grow_to_fit_keeps_growth_that_places(self):
        page = Page(index=0, width=64, height=64)
        page.try_place(InputRect("a", 64, 64), padding=0)

        placement = page.grow_to_fit(InputRect("b", 64, 64), padding=0, max_size=128)

        self.assertEqual((placement.x, placement.y), (64, 0))
        self.assertEqual(page.size, (128, 64))

    def test_failed_grow_restores_page_size(self):
        page = Page(index=0, width=64, height=64)
        page.try_place(InputRect("a", 64, 64), padding=0)

        placement = page.grow_to_fit(InputRect("b", 128, 128), padding=0, max_size=128)

        self.assertIsNone(placement)
        self.assertEqual(page.size, (64, 64))
        self.assertTrue(page.grow_width_next)
        self.assertEqual([p.id for p in page.placements], ["a"])


class TestRectanglePacker(unittest.TestCase):
    """Test packing runs."""

    def test_empty_input_yields_no_pages(self):
        result = RectanglePacker().pack([])

        self.assertEqual(result.pages, [])
        self.assertEqual(result.failures, {})

    def test_three_rects_share_one_wide_page(self):
        constraints = PackingConstraints(padding=0, min_size=64, max_size=512)
        rects = [InputRect("big", 64, 64), InputRect("small-a", 32, 32), InputRect("small-b", 32, 32)]

        result = RectanglePacker(constraints).pack(rects)

        self.assertEqual(len(result.pages), 1)
        self.assertEqual(result.pages[0].size, (128, 64))
        placements = result.placements
        self.assertEqual((placements["big"].x, placements["big"].y), (0, 0))
        self.assertEqual((placements["small-a"].x, placements["small-a"].y), (64, 0))
        self.assertEqual((placements["small-b"].x, placements["small-b"].y), (96, 0))
        assert_valid_packing(result, rects, constraints)

    def test_three_rects_with_padding(self):
        constraints = PackingConstraints(padding=2, min_size=64, max_size=512)
        rects = [InputRect("big", 64, 64), InputRect("small-a", 32, 32), InputRect("small-b", 32, 32)]

        result = RectanglePacker(constraints).pack(rects)

        self.assertEqual(len(result.pages), 1)
        self.assertEqual(result.pages[0].size, (128, 128))
        placements = result.placements
        self.assertEqual((placements["big"].x, placements["big"].y), (2, 2))
        self.assertEqual((placements["small-a"].x, placements["small-a"].y), (68, 2))
        self.assertEqual((placements["small-b"].x, placements["small-b"].y), (2, 68))
        assert_valid_packing(result, rects, constraints)

    def test_oversized_rect_reported_not_fatal(self):
        constraints = PackingConstraints(padding=1, min_size=64, max_size=512)
        rects = [InputRect("huge", 1024, 1024), InputRect("icon", 16, 16)]

        result = RectanglePacker(constraints).pack(rects)

        self.assertIn("huge", result.failures)
        self.assertIsInstance(result.failures["huge"], PackingInfeasibleError)
        self.assertEqual(result.failures["huge"].rect_id, "huge")
        self.assertIn("icon", result.placements)

    def test_padding_counts_towards_max_size(self):
        constraints = PackingConstraints(padding=1, min_size=64, max_size=128)

        result = RectanglePacker(constraints).pack([InputRect("edge", 127, 10)])

        self.assertIn("edge", result.failures)

    def test_rect_exactly_filling_max_page(self):
        constraints = PackingConstraints(padding=0, min_size=64, max_size=128)

        result = RectanglePacker(constraints).pack([InputRect("full", 128, 128)])

        self.assertEqual(result.failures, {})
        self.assertEqual(result.pages[0].size, (128, 128))

    def test_opens_new_page_when_full(self):
        constraints = PackingConstraints(padding=0, min_size=64, max_size=128)
        rects = [InputRect(f"tile-{i}", 64, 64) for i in range(5)]

        result = RectanglePacker(constraints).pack(rects)

        self.assertEqual(len(result.pages), 2)
        self.assertEqual(len(result.pages[0].placements), 4)
        self.assertEqual(result.pages[1].size, (64, 64))
        assert_valid_packing(result, rects, constraints)

    def test_duplicate_ids_rejected(self):
        with self.assertRaises(ValueError):
            RectanglePacker().pack([InputRect("a", 4, 4), InputRect("a", 8, 8)])

    def test_packing_is_deterministic(self):
        rng = random.Random(7)
        rects = [InputRect(f"r{i}", rng.randint(1, 90), rng.randint(1, 90)) for i in range(60)]
        packer = RectanglePacker(PackingConstraints(padding=2, min_size=64, max_size=256))

        first = packer.pack(rects)
        second = packer.pack(list(rects))

        self.assertEqual(first.placements, second.placements)
        self.assertEqual([p.size for p in first.pages], [p.size for p in second.pages])

    def test_placements_sorted_by_height_then_width_then_id(self):
        constraints = PackingConstraints(padding=0, min_size=64, max_size=64)
        rects = [InputRect("b", 10, 10), InputRect("a", 10, 10), InputRect("tall", 5, 20)]

        result = RectanglePacker(constraints).pack(rects)
        order = [p.id for p in result.pages[0].placements]

        self.assertEqual(order, ["tall", "a", "b"])


class TestPackingProperties:
    """Randomized checks that every run produces a valid layout."""

    @pytest.mark.parametrize("seed", range(12))
    def test_random_inputs_never_overlap(self, seed):
        rng = random.Random(seed)
        padding = rng.choice([0, 1, 2, 4])
        min_size = rng.choice([32, 64, 128])
        constraints = PackingConstraints(padding=padding, min_size=min_size, max_size=512)
        rects = [
            InputRect(f"r{i}", rng.randint(1, 200), rng.randint(1, 200))
            for i in range(rng.randint(1, 80))
        ]

        result = RectanglePacker(constraints).pack(rects)

        assert_valid_packing(result, rects, constraints)
        assert result.failures == {}

    def test_infeasible_mixed_with_feasible(self):
        constraints = PackingConstraints(padding=2, min_size=64, max_size=256)
        rects = [InputRect("wide", 300, 10), InputRect("tall", 10, 254), InputRect("ok", 100, 100)]

        result = RectanglePacker(constraints).pack(rects)

        assert set(result.failures) == {"wide", "tall"}
        assert_valid_packing(result, rects, constraints)

    def test_placement_intersects_respects_padding(self):
        a = Placement("a", 0, 0, 0, 10, 10)
        touching = Placement("b", 0, 10, 0, 10, 10)
        separated = Placement("c", 0, 12, 0, 10, 10)

        assert not a.intersects(touching)
        assert a.intersects(touching, padding=1)
        assert not a.intersects(separated, padding=2)
