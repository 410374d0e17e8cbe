import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

import task_time_tracker as ttt


def test_load_config_defaults_without_path():
    cfg = ttt.load_config(None)
    assert cfg == ttt.Config()
    assert cfg.note_time_format == '%H:%M:%S'
    assert cfg.log_level == 'ERROR'


def test_load_config_reads_yaml_and_expands_paths(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "db: ~/tracker/data.db\n"
        f"export_dir: {tmp_path / 'out'}\n"
        "note_time_format: '%H:%M'\n"
        "log_level: debug\n"
        "unknown_key: ignored\n",
        encoding='utf-8',
    )
    cfg = ttt.load_config(str(path))
    assert cfg.db == os.path.expanduser('~/tracker/data.db')
    assert cfg.export_dir == str(tmp_path / 'out')
    assert cfg.note_time_format == '%H:%M'
    assert cfg.log_level == 'debug'
    assert cfg.log_file == ttt.DEFAULT_LOG_PATH


def test_load_config_empty_file_is_defaults(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('', encoding='utf-8')
    assert ttt.load_config(str(path)) == ttt.Config()


@pytest.mark.parametrize('content', ['db: 5\n', 'export_dir: ""\n', '- just\n- a list\n'])
def test_load_config_rejects_bad_values(tmp_path, content):
    path = tmp_path / 'config.yaml'
    path.write_text(content, encoding='utf-8')
    with pytest.raises(ValueError):
        ttt.load_config(str(path))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ValueError):
        ttt.load_config(str(tmp_path / 'nope.yaml'))


def test_theme_presets_include_builtins_and_yaml_overrides(tmp_path):
    theme_dir = tmp_path / 'themes'
    theme_dir.mkdir()
    (theme_dir / 'solar.yaml').write_text(
        "name: Solar\nbase: light\nstyle:\n  header: 'bold #b58900'\n",
        encoding='utf-8',
    )
    (theme_dir / 'dark.yml').write_text("name: Dark\nstyle:\n  table.time: '#ffffff'\n", encoding='utf-8')
    (theme_dir / 'broken.yaml').write_text("name: [unclosed\n", encoding='utf-8')

    presets = ttt._load_theme_presets(theme_dir)
    names = [p.name for p in presets]
    assert names == ['Dark', 'Light', 'Solar']
    assert presets[0].style['table.time'] == '#ffffff'
    solar = presets[2].style
    assert solar['header'] == 'bold #b58900'
    assert solar['status'] == ttt.LIGHT_THEME_STYLE['status']
    assert ttt._theme_index(presets, 'solar') == 2
    assert ttt._theme_index(presets, 'unknown') == 0


def test_theme_presets_without_directory(tmp_path):
    presets = ttt._load_theme_presets(tmp_path / 'missing')
    assert [p.name for p in presets] == ['Dark', 'Light']


def test_setup_logging_replaces_handlers(tmp_path):
    log_path = tmp_path / 'logs' / 'tracker.log'
    logger = ttt.setup_logging('info', str(log_path))
    ttt.setup_logging('warning', str(log_path))
    try:
        handlers = logger.handlers
        assert len(handlers) == 1
        handler = handlers[0]
        assert isinstance(handler, RotatingFileHandler)
        assert handler.maxBytes == 2000000
        assert handler.backupCount == 2
        assert handler.level == logging.WARNING

        logger.warning('disk almost full')
        logger.info('not written')
        handler.flush()
        content = log_path.read_text(encoding='utf-8')
        assert 'WARNING disk almost full' in content
        assert 'not written' not in content
    finally:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()


def test_setup_logging_unknown_level_falls_back_to_error(tmp_path):
    logger = ttt.setup_logging('chatty', str(tmp_path / 'tracker.log'))
    try:
        assert logger.handlers[0].level == logging.ERROR
    finally:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()


def test_bundled_themes_load():
    theme_dir = Path(ttt.__file__).resolve().parent / 'themes'
    presets = ttt._load_theme_presets(theme_dir)
    solarized = next(p for p in presets if p.name == 'Solarized')
    assert solarized.style['header'] == 'bold #b58900'
    assert solarized.style['table.cursor'] == ttt.BASE_THEME_STYLE['table.cursor']
