"""Tests for the console entrypoint helpers (argument parsing, ranking output)."""
import unittest

from escalada_client.main import build_parser, format_ranking
from escalada_client.ranking import RankingRow
from escalada_client.store import BoxState


class ParserTest(unittest.TestCase):

    def test_watch_collects_boxes(self):
        args = build_parser().parse_args(["--api-base", "http://h/api", "watch", "--box", "1", "--box", "3"])
        self.assertEqual(args.command, "watch")
        self.assertEqual(args.boxes, [1, 3])
        self.assertEqual(args.api_base, "http://h/api")

    def test_public_needs_no_box(self):
        args = build_parser().parse_args(["public"])
        self.assertEqual(args.command, "public")
        self.assertIsNone(args.token)

    def test_watch_requires_box(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args(["watch"])


class FormatRankingTest(unittest.TestCase):

    def test_times_shown_only_with_time_criterion(self):
        box = BoxState(box_id=2, categorie="U16", routes_count=2, route_index=2, time_criterion_enabled=True)
        rows = [
            RankingRow(rank=1, name="Ana", scores=(10.0, 9.0), times=(75.0, None), total=1.0),
            RankingRow(rank=2, name="Ion", scores=(8.0, None), times=(None, None), total=1.5),
        ]
        text = format_ranking(box, rows)
        lines = text.splitlines()

        self.assertEqual(lines[0], "Box 2 U16 (route 2/2)")
        self.assertIn("Ana", lines[1])
        self.assertIn("time=01:15/--:--", lines[1])
        self.assertIn("8 -", lines[2])

        box.time_criterion_enabled = False
        self.assertNotIn("time=", format_ranking(box, rows))


if __name__ == "__main__":
    unittest.main()
