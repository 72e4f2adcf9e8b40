"""
Unit tests for the restore pipeline (offsite/backup/restore.py).

Tests RestorePipeline against the in-memory remote store with real archives
and encryption, and locate_subtree() for matching extracted directories.
"""

import os
import shutil
from dataclasses import replace
from datetime import date

import pytest

from offsite.backup.compression import (
    create_archive,
    generate_archive_filename,
    generate_dump_filename,
    generate_remote_filename,
)
from offsite.backup.restore import RestorePipeline, locate_subtree
from offsite.errors import CryptoError, NotFoundError


@pytest.fixture
def publish(tmp_path, cipher, storage):
    """
    Build, encrypt and store a backup of the given directories.

    Returns a function (dirs, day, with_dump=True) -> remote name.
    """
    staging = tmp_path / 'staging'
    staging.mkdir()

    def _publish(dirs, day=date(2024, 5, 1), with_dump=True):
        dump = None
        if with_dump:
            dump = staging / generate_dump_filename(day)
            dump.write_bytes(b'CREATE TABLE orders (id INT);\n')
        archive = create_archive(
            [str(d) for d in dirs], str(dump) if dump else None,
            str(staging / generate_archive_filename(day))
        )
        encrypted = cipher.encrypt(archive)
        return storage.upload(encrypted, generate_remote_filename(day))

    return _publish


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / 'restore_work'
    path.mkdir()
    return path


@pytest.fixture
def pipeline(config, storage, dump_provider, cipher):
    return RestorePipeline(config, storage, dump_provider, cipher)


class TestFetchLatest:
    """Test RestorePipeline.fetch_latest()."""

    def test_no_backups(self, pipeline, storage, work_dir):
        """Test an empty remote store raises NotFoundError without downloading."""
        storage.add('README.txt')

        with pytest.raises(NotFoundError):
            pipeline.fetch_latest(str(work_dir))

        assert 'download' not in storage.call_names()
        assert os.listdir(work_dir) == []

    def test_picks_newest(self, pipeline, storage, work_dir):
        """Test the newest backup by name date is downloaded."""
        storage.add('backup_2024-04-30.tar.gz.enc', b'old')
        storage.add('backup_2024-05-02.tar.gz.enc', b'newest')
        storage.add('backup_2024-05-01.tar.gz.enc', b'middle')

        local = pipeline.fetch_latest(str(work_dir))

        assert pipeline.summary.remote_name == 'backup_2024-05-02.tar.gz.enc'
        assert open(local, 'rb').read() == b'newest'


class TestRestorePipelineRun:
    """Test RestorePipeline.run()."""

    def test_full_restore(self, pipeline, publish, source_dirs, dump_provider, work_dir):
        """Test database and all directories are restored."""
        publish(source_dirs)
        www, nginx, uploads = source_dirs
        (www / 'index.html').write_text('defaced')
        (nginx / 'nginx.conf').unlink()

        summary = pipeline.run(str(work_dir))

        assert (www / 'index.html').read_text() == '<h1>hello</h1>'
        assert (nginx / 'nginx.conf').read_text() == 'worker_processes 4;'
        assert summary.database_restored is True
        assert dump_provider.restored == [b'CREATE TABLE orders (id INT);\n']
        assert summary.restored_dirs == [str(d) for d in source_dirs]
        assert summary.skipped_dirs == []
        assert summary.warnings == []

    def test_restore_recreates_deleted_directory(self, pipeline, publish, source_dirs, work_dir):
        """Test a live directory that no longer exists is recreated."""
        publish(source_dirs)
        shutil.rmtree(source_dirs[2])

        pipeline.run(str(work_dir))

        assert (source_dirs[2] / 'photo.jpg').exists()

    def test_restore_overlays_existing_files(self, pipeline, publish, source_dirs, work_dir):
        """Test files added after the backup are left in place."""
        publish(source_dirs)
        extra = source_dirs[0] / 'added-later.txt'
        extra.write_text('new')

        pipeline.run(str(work_dir))

        assert extra.read_text() == 'new'

    def test_partial_restore(self, config, storage, dump_provider, cipher, publish, source_dirs, work_dir):
        """Test a directory missing from the backup is skipped with a warning."""
        www, nginx, uploads = source_dirs
        publish([www, nginx])
        (www / 'index.html').write_text('defaced')
        (uploads / 'photo.jpg').write_bytes(b'live only')

        pipeline = RestorePipeline(config, storage, dump_provider, cipher)
        summary = pipeline.run(str(work_dir))

        assert (www / 'index.html').read_text() == '<h1>hello</h1>'
        assert (uploads / 'photo.jpg').read_bytes() == b'live only'
        assert summary.restored_dirs == [str(www), str(nginx)]
        assert summary.skipped_dirs == [str(uploads)]
        assert summary.warnings == [f'No backup found for directory: {uploads}']

    def test_restore_without_dump(self, pipeline, publish, source_dirs, dump_provider, work_dir):
        """Test a backup without a dump restores files and warns."""
        publish(source_dirs, with_dump=False)

        summary = pipeline.run(str(work_dir))

        assert summary.database_restored is False
        assert dump_provider.restored == []
        assert 'No database backup file found' in summary.warnings
        assert len(summary.restored_dirs) == 3

    def test_missing_directory_not_taken_from_another(self, pipeline, publish, source_dirs, work_dir):
        """Test a directory missing from the backup is not filled from another one."""
        www, nginx, uploads = source_dirs
        (www / 'uploads').mkdir()
        (www / 'uploads' / 'photo.jpg').write_bytes(b'site asset')
        publish([www, nginx])
        (uploads / 'photo.jpg').write_bytes(b'live only')

        summary = pipeline.run(str(work_dir))

        assert (uploads / 'photo.jpg').read_bytes() == b'live only'
        assert summary.skipped_dirs == [str(uploads)]

    def test_sql_in_directory_not_replayed(self, pipeline, publish, source_dirs, dump_provider, work_dir):
        """Test a backup without a dump never replays .sql files found in directories."""
        (source_dirs[0] / 'install').mkdir()
        (source_dirs[0] / 'install' / 'schema.sql').write_text('DROP TABLE users;')
        publish(source_dirs, with_dump=False)

        summary = pipeline.run(str(work_dir))

        assert dump_provider.restored == []
        assert summary.database_restored is False
        assert 'No database backup file found' in summary.warnings

    def test_wrong_passphrase_touches_nothing(self, config, storage, dump_provider, make_cipher,
                                              publish, source_dirs, work_dir):
        """Test decryption failure stops before the database or files are touched."""
        publish(source_dirs)
        (source_dirs[0] / 'index.html').write_text('current')

        pipeline = RestorePipeline(
            replace(config, encryption_passphrase='wrong'), storage, dump_provider,
            make_cipher(passphrase='wrong')
        )

        with pytest.raises(CryptoError) as exc_info:
            pipeline.run(str(work_dir))

        assert exc_info.value.reason == 'bad-passphrase'
        assert dump_provider.restored == []
        assert (source_dirs[0] / 'index.html').read_text() == 'current'


class TestLocateSubtree:
    """Test locate_subtree()."""

    def test_top_level_match(self, tmp_path):
        (tmp_path / 'www').mkdir()

        assert locate_subtree(str(tmp_path), '/var/www') == str(tmp_path / 'www')

    def test_nested_match(self, tmp_path):
        """Test archives holding full paths still match by base name."""
        (tmp_path / 'var' / 'lib' / 'html').mkdir(parents=True)

        assert locate_subtree(str(tmp_path), '/srv/html') == str(tmp_path / 'var' / 'lib' / 'html')

    def test_shallowest_match_wins(self, tmp_path):
        """Test a top-level entry beats a deeper one."""
        (tmp_path / 'a' / 'www').mkdir(parents=True)
        (tmp_path / 'www').mkdir()

        assert locate_subtree(str(tmp_path), '/var/www') == str(tmp_path / 'www')

    def test_trailing_slash(self, tmp_path):
        (tmp_path / 'nginx').mkdir()

        assert locate_subtree(str(tmp_path), '/etc/nginx/') == str(tmp_path / 'nginx')

    def test_no_match(self, tmp_path):
        (tmp_path / 'www').mkdir()

        assert locate_subtree(str(tmp_path), '/etc/nginx') is None

    def test_files_are_not_matched(self, tmp_path):
        """Test a regular file with the same name is not a match."""
        (tmp_path / 'nginx').write_text('not a directory')

        assert locate_subtree(str(tmp_path), '/etc/nginx') is None

    def test_other_configured_directory_not_searched(self, tmp_path):
        """Test a same-named subdirectory of another configured directory is not matched."""
        (tmp_path / 'www' / 'uploads').mkdir(parents=True)

        located = locate_subtree(str(tmp_path), '/var/lib/uploads', ['/var/www', '/var/lib/uploads'])

        assert located is None

    def test_unclaimed_parents_still_searched(self, tmp_path):
        """Test full-path archives match when the parent is not a configured directory."""
        (tmp_path / 'var' / 'www').mkdir(parents=True)

        assert locate_subtree(str(tmp_path), '/var/www', ['/var/www', '/etc/nginx']) == str(tmp_path / 'var' / 'www')
