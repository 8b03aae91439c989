from pathlib import Path
import sys
import unittest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from program_parser import SECTION, SONG, ParsedItem, derive_program_title, parse_program, program_base_title


class ParseProgramTest(unittest.TestCase):
    def test_parses_title_sections_and_songs(self):
        parsed = parse_program(
            "{Solstice 2024}\n"
            "Opening_Words\n"
            "\n"
            "#Darkness\n"
            "Brighter Than Today:key=G\n"
            "#\n"
            "#Light\n"
            "  Hymn for the Dark  \n"
        )

        self.assertEqual(parsed.title, 'Solstice 2024')
        self.assertEqual(parsed.items, [
            ParsedItem(SONG, 'Opening Words'),
            ParsedItem(SECTION, 'Darkness'),
            ParsedItem(SONG, 'Brighter Than Today'),
            ParsedItem(SECTION, 'Light'),
            ParsedItem(SONG, 'Hymn for the Dark'),
        ])

    def test_blank_lines_are_skipped(self):
        parsed = parse_program("   \n\n{ }\n")
        self.assertTrue(parsed.is_empty)
        self.assertIsNone(parsed.title)

    def test_leading_colon_keeps_the_whole_line(self):
        parsed = parse_program(":key=C\nSong_A:\n")
        self.assertEqual(parsed.items, [
            ParsedItem(SONG, ':key=C'),
            ParsedItem(SONG, 'Song A'),
        ])

    def test_base_title_strips_playlist_extension(self):
        self.assertEqual(program_base_title('Winter_Solstice.list'), 'Winter Solstice')
        self.assertEqual(program_base_title('notes.txt'), 'notes.txt')

    def test_derived_title_combines_distinct_titles(self):
        self.assertEqual(derive_program_title('Solstice.lst', 'Solstice 2024'), 'Solstice - Solstice 2024')
        self.assertEqual(derive_program_title('Solstice.lst', 'solstice'), 'Solstice')
        self.assertEqual(derive_program_title('Solstice.lst', None), 'Solstice')


if __name__ == "__main__":
    unittest.main()
