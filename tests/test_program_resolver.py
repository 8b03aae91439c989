from pathlib import Path
import sys
import tempfile
import unittest

sys.path.append(str(Path(__file__).resolve().parents[1]))
sys.path.append(str(Path(__file__).resolve().parent))

from _memory_db import MemoryDatabase
from content_store import ContentImportError, ContentStore, LineageBuilder, ProgramRecord
from program_parser import parse_program
from program_resolver import (
    Concrete,
    ProgramResolver,
    Resolution,
    Simulated,
    concrete_ids,
    flatten_program,
    plan_resync,
)


def _tmp_dir():
    return Path(tempfile.mkdtemp())


PLAYLIST = (
    "{Solstice 2024}\n"
    "Opening Words\n"
    "#Darkness\n"
    "Brighter Than Today\n"
    "Missing Song\n"
    "#Light\n"
    "Hymn for the Dark\n"
)


class ReferenceTest(unittest.TestCase):
    def test_concrete_ids_rejects_simulated_refs(self):
        self.assertEqual(concrete_ids([Concrete('a'), Concrete('b')]), ['a', 'b'])
        with self.assertRaises(ContentImportError):
            concrete_ids([Concrete('a'), Simulated('Darkness')])

    def test_plan_resync_skips_when_nothing_changed(self):
        program = ProgramRecord(id='p', title='Solstice', element_ids=['v1'], program_ids=['p2'])
        same = Resolution(element_refs=[Concrete('v1')], program_refs=[Concrete('p2')])
        self.assertIsNone(plan_resync(program, same))

        grown = Resolution(element_refs=[Concrete('v1'), Concrete('v3')], program_refs=[Concrete('p2')])
        self.assertEqual(plan_resync(program, grown).added_elements, 1)

        with_placeholder = Resolution(element_refs=[Concrete('v1')], program_refs=[Concrete('p2')],
                                      created_placeholders=['Lost Song'])
        self.assertEqual(plan_resync(program, with_placeholder).added_elements, 0)

        reordered = Resolution(element_refs=[Concrete('v1')], program_refs=[Concrete('p2')],
                               updated_sections=['Act 1'])
        self.assertEqual(plan_resync(program, reordered).added_elements, 0)


class ProgramResolverTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = MemoryDatabase()
        self.store = ContentStore(self.db)
        await self.store.ensure_indexes()
        self.lineage = LineageBuilder(self.store)
        self.resolver = ProgramResolver(self.store, self.lineage)
        self.versions = {}
        for title in ('Opening Words', 'Brighter Than Today', 'Hymn for the Dark'):
            song = await self.store.create_song(title, None, ['song'])
            self.versions[title] = await self.lineage.append_version(song.id, 'lyrics.txt', content=title)

    async def test_sections_become_subprograms_with_act_tags(self):
        resolution = await self.resolver.resolve(parse_program(PLAYLIST).items, dry_run=False, reuse_subprograms=False)

        self.assertEqual(resolution.element_refs, [Concrete(self.versions['Opening Words'].id)])
        self.assertEqual(len(resolution.program_refs), 2)
        self.assertEqual(resolution.created_placeholders, ['Missing Song'])
        self.assertEqual(resolution.missing_elements, [])

        darkness = await self.store.get_program(resolution.program_refs[0].id)
        self.assertEqual(darkness.title, 'Darkness')
        self.assertTrue(darkness.is_subprogram)
        self.assertEqual(darkness.element_ids[0], self.versions['Brighter Than Today'].id)
        self.assertEqual(len(darkness.element_ids), 2)

        placeholder_song = await self.store.find_song_by_title('Missing Song')
        self.assertEqual(placeholder_song.tags, ['placeholder', 'act 1'])
        placeholder = await self.store.latest_version(placeholder_song.id)
        self.assertEqual((placeholder.label, placeholder.content), ('placeholder', ''))

        hymn = await self.store.find_song_by_title('Hymn for the Dark')
        self.assertIn('act 2', hymn.tags)
        opening = await self.store.find_song_by_title('Opening Words')
        self.assertEqual(opening.tags, ['song'])

    async def test_dry_run_simulates_subprograms_and_reports_missing(self):
        writes = self.db.write_calls
        resolution = await self.resolver.resolve(parse_program(PLAYLIST).items, dry_run=True, reuse_subprograms=False)

        self.assertEqual(self.db.write_calls, writes)
        self.assertEqual(resolution.program_refs, [Simulated('Darkness'), Simulated('Light')])
        self.assertEqual(resolution.missing_elements, ['Missing Song'])
        self.assertEqual(resolution.created_placeholders, [])

    async def test_empty_sections_create_nothing(self):
        items = parse_program("#Intermission\nNobody Knows This\n").items
        resolution = await self.resolver.resolve(items, dry_run=True, reuse_subprograms=False)
        self.assertEqual(resolution.reference_count, 0)
        self.assertEqual(resolution.missing_elements, ['Nobody Knows This'])

    async def test_reused_subprogram_is_not_rewritten_when_identical(self):
        items = parse_program(PLAYLIST).items
        first = await self.resolver.resolve(items, dry_run=False, reuse_subprograms=True)
        writes = self.db.write_calls
        second = await self.resolver.resolve(items, dry_run=False, reuse_subprograms=True)

        self.assertEqual(second.program_refs, first.program_refs)
        self.assertEqual(second.created_placeholders, [])
        self.assertEqual(self.db.write_calls, writes)

    async def test_resync_updates_program_from_playlist(self):
        playlists = _tmp_dir()
        (playlists / 'Solstice.list').write_text(PLAYLIST, encoding='utf-8')
        program = await self.store.create_program('Solstice - Solstice 2024', None)
        await self.store.replace_program_refs(program.id, [self.versions['Opening Words'].id], [])

        streamed = []
        dry = await self.resolver.resync([playlists], dry_run=True, on_result=streamed.append)
        self.assertEqual([r.status for r in dry], ['would-resync'])
        self.assertEqual(streamed, dry)

        results = await self.resolver.resync([playlists], dry_run=False)
        self.assertEqual(results[0].status, 'resynced')
        self.assertEqual(results[0].added_elements, 2)
        self.assertEqual(results[0].created_placeholders, ['Missing Song'])
        stored = await self.store.get_program(program.id)
        self.assertEqual(len(stored.program_ids), 2)

        writes = self.db.write_calls
        self.assertEqual(await self.resolver.resync([playlists], dry_run=False), [])
        self.assertEqual(self.db.write_calls, writes)

    async def _section_elements(self, title, section):
        program = await self.store.find_program_by_title(title)
        for program_id in program.program_ids:
            child = await self.store.get_program(program_id)
            if child.title == section:
                return child.id, child.element_ids
        return None, None

    async def test_resync_keeps_shared_section_titles_apart(self):
        playlists = _tmp_dir()
        (playlists / 'Evening.list').write_text("#Act 1\nBrighter Than Today\n", encoding='utf-8')
        (playlists / 'Morning.list').write_text("#Act 1\nHymn for the Dark\n", encoding='utf-8')
        await self.store.create_program('Evening', None)
        await self.store.create_program('Morning', None)

        first = await self.resolver.resync([playlists], dry_run=False)
        self.assertEqual(sorted((r.title, r.status) for r in first),
                         [('Evening', 'resynced'), ('Morning', 'resynced')])

        evening_act, evening_ids = await self._section_elements('Evening', 'Act 1')
        morning_act, morning_ids = await self._section_elements('Morning', 'Act 1')
        self.assertNotEqual(evening_act, morning_act)
        self.assertEqual(evening_ids, [self.versions['Brighter Than Today'].id])
        self.assertEqual(morning_ids, [self.versions['Hymn for the Dark'].id])

        writes = self.db.write_calls
        self.assertEqual(await self.resolver.resync([playlists], dry_run=False), [])
        self.assertEqual(await self.resolver.resync([playlists], dry_run=False), [])
        self.assertEqual(self.db.write_calls, writes)

    async def test_resync_reports_a_changed_section_of_its_own_program_only(self):
        playlists = _tmp_dir()
        (playlists / 'Evening.list').write_text("#Act 1\nBrighter Than Today\n", encoding='utf-8')
        morning = playlists / 'Morning.list'
        morning.write_text("#Act 1\nHymn for the Dark\n", encoding='utf-8')
        await self.store.create_program('Evening', None)
        await self.store.create_program('Morning', None)
        await self.resolver.resync([playlists], dry_run=False)
        evening_before = await self._section_elements('Evening', 'Act 1')

        morning.write_text("#Act 1\nHymn for the Dark\nOpening Words\n", encoding='utf-8')
        dry = await self.resolver.resync([playlists], dry_run=True)
        self.assertEqual([(r.title, r.status, r.added_elements) for r in dry], [('Morning', 'would-resync', 0)])

        results = await self.resolver.resync([playlists], dry_run=False)
        self.assertEqual([(r.title, r.status) for r in results], [('Morning', 'resynced')])
        self.assertEqual(await self._section_elements('Evening', 'Act 1'), evening_before)
        _, morning_ids = await self._section_elements('Morning', 'Act 1')
        self.assertEqual(morning_ids, [self.versions['Hymn for the Dark'].id, self.versions['Opening Words'].id])

    async def test_section_titled_like_its_program_is_not_the_program(self):
        playlists = _tmp_dir()
        playlist = "Opening Words\n#Solstice\nBrighter Than Today\n"
        (playlists / 'Solstice.list').write_text(playlist, encoding='utf-8')
        imported = await self.resolver.resolve(parse_program(playlist).items, dry_run=False, reuse_subprograms=False)
        program = await self.store.create_program('Solstice', None)
        await self.store.replace_program_refs(
            program.id, concrete_ids(imported.element_refs), concrete_ids(imported.program_refs))
        writes = self.db.write_calls

        self.assertEqual(await self.resolver.resync([playlists], dry_run=False), [])

        self.assertEqual(self.db.write_calls, writes)
        self.assertEqual((await self.store.find_program_by_title('Solstice')).id, program.id)
        stored = await self.store.get_program(program.id)
        self.assertNotIn(program.id, stored.program_ids)
        section = await self.store.get_program(stored.program_ids[0])
        self.assertEqual(section.title, 'Solstice')
        self.assertEqual(section.element_ids, [self.versions['Brighter Than Today'].id])


class FlattenProgramTest(unittest.IsolatedAsyncioTestCase):
    async def test_flatten_terminates_on_cycles(self):
        store = ContentStore(MemoryDatabase())
        outer = await store.create_program('Outer', None)
        inner = await store.create_program('Inner', None, is_subprogram=True)
        await store.replace_program_refs(outer.id, ['v1'], [inner.id])
        await store.replace_program_refs(inner.id, ['v2', 'v3'], [outer.id, 'gone'])

        self.assertEqual(await flatten_program(store, outer.id, set()), ['v1', 'v2', 'v3'])


if __name__ == "__main__":
    unittest.main()
