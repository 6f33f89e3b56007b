"""Tests for config loading/saving and log file setup."""
import logging
import os
import stat
from datetime import datetime
from pathlib import Path

import pytest
import yaml

from flickrcli import (
    ConfigError,
    OutputLevel,
    default_config_path,
    load_config,
    read_timeout,
    save_config,
    setup_logging,
)

FULL = {'flickr': {'consumer_key': 'k', 'consumer_secret': 's',
                   'token': 't', 'token_secret': 'ts'}}


class TestConfig:

    def test_roundtrip_and_permissions(self, tmp_path):
        path = tmp_path / 'conf' / 'config.yml'
        save_config(path, FULL)

        assert load_config(path) == FULL
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_save_tightens_existing_file(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text('flickr: {}\n')
        os.chmod(path, 0o644)

        save_config(path, FULL)

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_config(tmp_path / 'nope.yml')

    def test_missing_consumer_key(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text(yaml.safe_dump({'flickr': {'consumer_secret': 's'}}))
        with pytest.raises(ConfigError, match='flickr.consumer_key'):
            load_config(path, require_token=False)

    def test_token_required_unless_told_otherwise(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text(yaml.safe_dump({'flickr': {'consumer_key': 'k',
                                                   'consumer_secret': 's'}}))
        with pytest.raises(ConfigError, match='flickr.token'):
            load_config(path)
        assert load_config(path, require_token=False)['flickr']['consumer_key'] == 'k'

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'config.yml'
        path.write_text('flickr: [unclosed\n')
        with pytest.raises(ConfigError, match='Invalid'):
            load_config(path)

    def test_default_path_from_environment(self, monkeypatch):
        monkeypatch.setenv('FLICKRCLI_CONFIG', '/etc/flickr.yml')
        assert default_config_path() == Path('/etc/flickr.yml')
        monkeypatch.delenv('FLICKRCLI_CONFIG')
        assert default_config_path() == Path('config.yml')

    def test_read_timeout(self):
        assert read_timeout({}) == 300
        assert read_timeout({'transfer': {'read_timeout': 30}}) == 30


class TestLogging:

    def test_log_files_partitioned_by_date(self, tmp_path):
        logger, failed = setup_logging('download', tmp_path, OutputLevel.QUIET)
        logger.info('hello')
        failed.info('12345')
        for handler in logger.handlers + failed.handlers:
            handler.flush()

        stamp = datetime.now().strftime('%Y%m%d')
        main_log = tmp_path / f'flickr_download_{stamp}.log'
        failed_log = tmp_path / f'flickr_download_files_failed_{stamp}.log'
        assert 'INFO: hello' in main_log.read_text()
        assert failed_log.read_text() == '12345\n'

    def test_setup_twice_does_not_duplicate_handlers(self, tmp_path):
        setup_logging('upload', tmp_path)
        logger, failed = setup_logging('upload', tmp_path)
        assert len(logger.handlers) == 2
        assert len(failed.handlers) == 1

    def test_console_level_follows_output_level(self):
        logger, _ = setup_logging('albums', None, OutputLevel.VERBOSE)
        assert logger.handlers[0].level == logging.DEBUG
        logger, _ = setup_logging('albums', None, OutputLevel.QUIET)
        assert logger.handlers[0].level == logging.WARNING
