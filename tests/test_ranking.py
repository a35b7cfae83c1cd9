"""
Test suite for live ranking computation
Run: pytest tests/test_ranking.py -v
"""
import unittest

from escalada_client.messages import BoxSnapshot
from escalada_client.ranking import (
    RankingRow,
    build_ranking_rows,
    competition_ranks,
    effective_routes_count,
    format_seconds,
    geometric_total,
    podium_ties,
    rank_box,
    rank_points_per_route,
    visible_times,
)
from escalada_client.store import BoxState


class RankPointsTest(unittest.TestCase):

    def test_tied_scores_share_average_position(self):
        points, counts = rank_points_per_route({"Alice": [10], "Bob": [10], "Cara": [8]}, 1)
        self.assertEqual(points, {"Alice": [1.5], "Bob": [1.5], "Cara": [3.0]})
        self.assertEqual(counts, [3])

    def test_three_way_tie_below_leader(self):
        points, _ = rank_points_per_route({"A": [20], "B": [15], "C": [15], "D": [15]}, 1)
        self.assertEqual(points["A"], [1.0])
        self.assertEqual({points[n][0] for n in ("B", "C", "D")}, {3.0})

    def test_unscored_route_has_no_entry(self):
        points, counts = rank_points_per_route({"A": [10, None], "B": [8, 5]}, 2)
        self.assertEqual(points["A"], [1.0, None])
        self.assertEqual(points["B"], [2.0, 1.0])
        self.assertEqual(counts, [2, 1])

    def test_non_finite_and_bool_scores_are_ignored(self):
        points, counts = rank_points_per_route({"A": [float("nan")], "B": [True], "C": [3]}, 1)
        self.assertEqual(points, {"C": [1.0]})
        self.assertEqual(counts, [1])


class TotalTest(unittest.TestCase):

    def test_single_route_total_is_rank_point(self):
        self.assertEqual(geometric_total([1.0], 1, [1]), 1.0)

    def test_missing_route_filled_with_scored_count_plus_one(self):
        scores = {"X": [10, None, 8], "Y": [9, 7, 9], "Z": [8, 6, 7]}
        points, counts = rank_points_per_route(scores, 3)
        self.assertEqual(points["X"], [1.0, None, 2.0])
        self.assertEqual(counts, [3, 2, 3])
        # (1 * 3 * 2) ** (1/3)
        self.assertEqual(geometric_total(points["X"], 3, counts), 1.817)

    def test_total_is_rounded_to_three_decimals(self):
        self.assertEqual(geometric_total([1.0, 2.0], 2, [2, 2]), 1.414)


class OrderingTest(unittest.TestCase):

    def test_shared_ranks(self):
        self.assertEqual(competition_ranks([1.0, 1.0, 3.0]), [1, 1, 3])
        self.assertEqual(competition_ranks([1.0, 2.0, 2.0, 2.0, 5.0]), [1, 2, 2, 2, 5])
        self.assertEqual(competition_ranks([]), [])

    def test_rows_use_competition_ranking(self):
        rows = build_ranking_rows({"Alice": [10], "Bob": [10], "Cara": [8]}, routes_count=1)
        self.assertEqual([(r.rank, r.name, r.total) for r in rows], [(1, "Alice", 1.5), (1, "Bob", 1.5), (3, "Cara", 3.0)])

    def test_equal_totals_order_by_name_case_insensitive(self):
        rows = build_ranking_rows({"bob": [10], "Alice": [10], "carl": [10]}, routes_count=1)
        self.assertEqual([r.name for r in rows], ["Alice", "bob", "carl"])

    def test_times_never_change_order(self):
        scores = {"Alice": [10, 5], "Bob": [10, 5], "Cara": [7, 9]}
        times = {"Alice": [120.0, 80.0], "Bob": [60.0, 40.0]}
        swapped = {"Alice": times["Bob"], "Bob": times["Alice"]}

        first = build_ranking_rows(scores, times, 2)
        second = build_ranking_rows(scores, swapped, 2)

        self.assertEqual([r.name for r in first], [r.name for r in second])
        self.assertEqual([r.total for r in first], [r.total for r in second])
        self.assertEqual([r.name for r in first], ["Cara", "Alice", "Bob"])
        self.assertEqual(first[1].times, (120.0, 80.0))
        self.assertEqual(second[1].times, (60.0, 40.0))

    def test_repeated_computation_is_identical(self):
        scores = {"Zed": [3, 9], "amy": [7, None], "Bo": [7, 2], "Cy": [None, 9]}
        times = {"Zed": [30.0, 50.0]}
        runs = [build_ranking_rows(scores, times, 2) for _ in range(5)]
        for rows in runs[1:]:
            self.assertEqual(rows, runs[0])

    def test_competitor_without_any_score_is_omitted(self):
        rows = build_ranking_rows({"A": [10], "Ghost": [None], "Empty": []}, routes_count=1)
        self.assertEqual([r.name for r in rows], ["A"])

    def test_multi_route_example(self):
        scores = {"Alice": [10, 7], "Bob": [8, 9], "Cara": [8, None]}
        rows = build_ranking_rows(scores, routes_count=2)
        # Alice: (1 * 2) ** .5 = 1.414; Bob: (2.5 * 1) ** .5 = 1.581; Cara: (2.5 * 3) ** .5 = 2.739
        self.assertEqual([(r.name, r.total) for r in rows], [("Alice", 1.414), ("Bob", 1.581), ("Cara", 2.739)])
        self.assertEqual(rows[2].scores, (8.0, None))


class EffectiveRoutesCountTest(unittest.TestCase):

    def test_defaults_to_one(self):
        self.assertEqual(effective_routes_count(None), 1)
        self.assertEqual(effective_routes_count(0, 0, []), 1)

    def test_uses_largest_source(self):
        self.assertEqual(effective_routes_count(2, 3, [10, 12]), 3)
        self.assertEqual(effective_routes_count(1, 1, [10, 12, 14, 16]), 4)
        self.assertEqual(effective_routes_count(5, 1, None), 5)


class RankBoxTest(unittest.TestCase):

    def test_rank_box_from_public_snapshot(self):
        snap = BoxSnapshot.model_validate(
            {
                "boxId": 3,
                "routeIndex": 2,
                "routesCount": 2,
                "scoresByName": {"Ana": [10, 8], "Ion": [9, 9]},
                "timesByName": {"Ana": [61.5, None]},
            }
        )
        rows = rank_box(BoxState.from_snapshot(snap))
        self.assertEqual([r.name for r in rows], ["Ana", "Ion"])
        self.assertEqual(rows[0].times, (61.5, None))
        # Both (1 * 2) ** .5
        self.assertEqual(rows[0].rank, rows[1].rank)


class DisplayHelpersTest(unittest.TestCase):

    def _rows(self):
        return [
            RankingRow(rank=1, name="A", scores=(10.0,), times=(50.0,), total=1.0),
            RankingRow(rank=2, name="B", scores=(9.0,), times=(55.0,), total=2.5),
            RankingRow(rank=2, name="C", scores=(9.0,), times=(57.0,), total=2.5),
            RankingRow(rank=4, name="D", scores=(5.0,), times=(70.0,), total=4.0),
        ]

    def test_times_visible_only_for_top_three_with_criterion(self):
        rows = self._rows()
        self.assertEqual(visible_times(rows, False), {})
        self.assertEqual(set(visible_times(rows, True)), {"A", "B", "C"})

    def test_podium_ties(self):
        self.assertEqual(podium_ties(self._rows()), [("B", "C")])
        self.assertEqual(podium_ties(self._rows(), podium=1), [])

    def test_format_seconds(self):
        self.assertEqual(format_seconds(83), "01:23")
        self.assertEqual(format_seconds(0), "00:00")
        self.assertEqual(format_seconds(None), "--:--")
        self.assertEqual(format_seconds(float("nan")), "--:--")


if __name__ == "__main__":
    unittest.main()
