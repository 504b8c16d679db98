# User value: This test keeps part names and filenames consistent so librarians find the right part every time.
import unittest

from services.part_naming import (
    PART_TYPE_CONDUCTOR_SCORE,
    PART_TYPE_PART,
    build_part_display_name,
    build_part_filename,
    build_part_storage_slug,
    normalize_instrument_label,
)


class PartNamingUnitTests(unittest.TestCase):
    def test_clarinet_chair_and_transposition(self):
        out = normalize_instrument_label("Clarinet 1")
        self.assertEqual(out.instrument, "1st Bb Clarinet")
        self.assertEqual(out.chair, "1st")
        self.assertEqual(out.transposition, "Bb")
        self.assertEqual(out.section, "Woodwinds")
        self.assertEqual(out.part_type, PART_TYPE_PART)

    def test_clarinet_phrasings_collapse_to_one_name(self):
        for raw in ("Clarinet in Bb II", "Bb Clarinet 2", "Clarinet 2 in Bb"):
            self.assertEqual(normalize_instrument_label(raw).instrument, "2nd Bb Clarinet", raw)

    def test_specific_instruments_beat_generic(self):
        self.assertEqual(normalize_instrument_label("Bass Clarinet").instrument, "Bass Clarinet")
        self.assertEqual(normalize_instrument_label("Alto Sax 1").instrument, "1st Alto Saxophone")
        self.assertEqual(normalize_instrument_label("F Horn 3").transposition, "F")

    def test_conductor_score_part_type(self):
        out = normalize_instrument_label("Conductor")
        self.assertEqual(out.instrument, "Conductor Score")
        self.assertEqual(out.part_type, PART_TYPE_CONDUCTOR_SCORE)
        self.assertEqual(out.section, "Score")

    def test_unknown_label_is_kept(self):
        out = normalize_instrument_label("Kazoo")
        self.assertEqual(out.instrument, "Kazoo")
        self.assertEqual(out.section, "Other")
        self.assertEqual(normalize_instrument_label(None).instrument, "Unknown")

    def test_filenames_and_slugs(self):
        display = build_part_display_name("American  Patrol", "1st Bb Clarinet")
        self.assertEqual(display, "American Patrol 1st Bb Clarinet")
        self.assertEqual(build_part_filename(display), "American_Patrol_1st_Bb_Clarinet.pdf")
        self.assertEqual(build_part_filename("A   B"), "A_B.pdf")
        self.assertEqual(build_part_filename('Bad/Name:"x"'), "BadNamex.pdf")
        self.assertEqual(build_part_storage_slug("Tuba (opt.)"), "Tuba_opt")
        self.assertEqual(len(build_part_filename("x" * 500)), 204)


if __name__ == "__main__":
    unittest.main()
