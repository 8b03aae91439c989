from pathlib import Path
import io
import json
import sys
import tempfile
import types
import unittest
from contextlib import redirect_stdout
from unittest import mock

sys.path.append(str(Path(__file__).resolve().parents[1]))
sys.path.append(str(Path(__file__).resolve().parent))

import app
from _memory_db import MemoryDatabase
from content_scanner import GitTimestamps, MtimeTimestamps
from import_config import _coerce_bool, _load_config_module, load_settings, take_config


def _config(**values):
    module = types.ModuleType('songbook_test_config')
    for key, value in values.items():
        setattr(module, key, value)
    return module


class ConfigHelpersTest(unittest.TestCase):
    def test_coerce_bool(self):
        self.assertTrue(_coerce_bool(None, True))
        self.assertFalse(_coerce_bool('off', True))
        self.assertTrue(_coerce_bool('yes', False))
        self.assertFalse(_coerce_bool(0, True))
        self.assertTrue(_coerce_bool('', True))

    def test_take_config(self):
        config = _config(IMPORT_USER='archivist')
        self.assertEqual(take_config(config, 'IMPORT_USER'), 'archivist')
        self.assertIsNone(take_config(None, 'IMPORT_USER'))
        with self.assertRaises(ValueError):
            take_config(config, 'MONGO', required=True)

    def test_load_config_module_from_path(self):
        path = Path(tempfile.mkdtemp()) / 'songbook.py'
        path.write_text("IMPORT_USER = 'from-file'\n", encoding='utf-8')
        with mock.patch('import_config.importlib.import_module', side_effect=ModuleNotFoundError):
            module = _load_config_module({'SONGBOOK_IMPORT_CONFIG_PATH': str(path)})
        self.assertEqual(module.IMPORT_USER, 'from-file')

    def test_missing_config_module_is_optional(self):
        missing = str(Path(tempfile.mkdtemp()) / 'nope.py')
        with mock.patch('import_config.Path.exists', return_value=False), \
                mock.patch('import_config.importlib.import_module', side_effect=ModuleNotFoundError):
            self.assertIsNone(_load_config_module({'SONGBOOK_IMPORT_CONFIG_PATH': missing}))


class LoadSettingsTest(unittest.TestCase):
    def test_values_come_from_config_module(self):
        config = _config(
            MONGO={'uri': 'mongodb://db:27017', 'database': 'solstice'},
            SONGS_DIRS=['/data/songs', {'path': '/data/rounds', 'tags': ['song', 'round']}],
            SPEECHES_DIRS='/data/speeches',
            PROGRAMS_DIRS=['/data/programs'],
            ACTIVITIES_FILE='/data/activities.txt',
            LILYPOND_SERVER_URL='http://lilypond:3000',
        )

        settings = load_settings(config, environ={})

        self.assertEqual(settings.mongo_uri, 'mongodb://db:27017')
        self.assertEqual(settings.mongo_db, 'solstice')
        self.assertEqual(settings.import_user, 'secularsolstice-import')
        self.assertEqual([d.tags for d in settings.sources.songs_dirs], [['song'], ['song', 'round']])
        self.assertEqual(settings.sources.speeches_dirs, [Path('/data/speeches')])
        self.assertEqual(settings.sources.activities_file, Path('/data/activities.txt'))
        self.assertEqual(settings.lilypond_server_url, 'http://lilypond:3000')
        self.assertIsInstance(settings.timestamp_strategy(), MtimeTimestamps)

    def test_environment_overrides_config(self):
        config = _config(MONGO={'uri': 'mongodb://db:27017'}, IMPORT_USER='archivist', SONGS_DIRS=['/data/songs'])
        environ = {
            'SONGBOOK_MONGO_URI': 'mongodb://override:27017',
            'SONGBOOK_MONGO_DB': 'staging',
            'SONGBOOK_IMPORT_USER': 'bot',
            'SONGBOOK_TIMESTAMP_SOURCE': 'GIT',
            'SONGBOOK_SONGS_DIRS': '/a/songs',
            'SONGBOOK_RENDER_ON_IMPORT': 'no',
        }

        settings = load_settings(config, environ=environ)

        self.assertEqual(settings.mongo_uri, 'mongodb://override:27017')
        self.assertEqual(settings.mongo_db, 'staging')
        self.assertEqual(settings.import_user, 'bot')
        self.assertEqual([d.path for d in settings.sources.songs_dirs], [Path('/a/songs')])
        self.assertFalse(settings.render_on_import)
        self.assertIsInstance(settings.timestamp_strategy(), GitTimestamps)

    def test_unknown_timestamp_source_is_rejected(self):
        with self.assertRaises(ValueError):
            load_settings(_config(), environ={'SONGBOOK_TIMESTAMP_SOURCE': 'ctime'})


class CommandLineTest(unittest.IsolatedAsyncioTestCase):
    def test_parser_defaults_to_run(self):
        args = app.build_parser().parse_args(['--dry-run', '--songs-dir', '/songs'])
        self.assertIsNone(args.command)
        self.assertTrue(args.dry_run)

        settings = load_settings(_config(), environ={})
        app._apply_overrides(settings, args)
        self.assertEqual([d.path for d in settings.sources.songs_dirs], [Path('/songs')])

    async def test_dry_run_prints_outcomes_and_summary(self):
        speeches = Path(tempfile.mkdtemp())
        (speeches / 'Opening_Words.md').write_text('Welcome', encoding='utf-8')
        settings = load_settings(_config(SPEECHES_DIRS=[str(speeches)]), environ={})
        db = MemoryDatabase()
        import_app = app.ImportApp(settings, db)
        args = app.build_parser().parse_args(['--dry-run', 'run'])

        out = io.StringIO()
        with redirect_stdout(out):
            code = await app.COMMANDS['run'](import_app, args)

        lines = [json.loads(line) for line in out.getvalue().splitlines()]
        self.assertEqual(code, 0)
        self.assertEqual(lines[0]['status'], 'would-create')
        self.assertEqual(lines[0]['title'], 'Opening Words')
        self.assertEqual(lines[-1]['summary']['speeches'], {'would-create': 1})
        self.assertEqual(db.write_calls, 0)


if __name__ == "__main__":
    unittest.main()
