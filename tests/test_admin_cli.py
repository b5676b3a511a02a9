import gzip
import os
import sqlite3
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

import admin_cli
from app import app, init_db


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        MAIL_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        c.db_path = db_path
        yield c
    os.close(db_fd)
    os.unlink(db_path)


def onboard(client, email='owner@example.com'):
    client.post('/api/sign-up', json={'name': 'Pat Owner', 'email': email, 'password': 'StrongPass1'})
    client.post('/api/add-user-action/google-connection', json={})
    client.post('/api/add-user', json={'email': email, 'businessName': 'Acme Plumbing'})


def test_reserve_and_release_slug(client, capsys):
    assert admin_cli.reserve_slug('pricing', db_path=client.db_path) is True
    assert 'reserved_rows=1' in capsys.readouterr().out
    availability = client.get('/api/name-availability?name=pricing').get_json()
    assert availability['available'] is False

    assert admin_cli.release_slug('pricing', db_path=client.db_path) == 1
    assert client.get('/api/name-availability?name=pricing').get_json()['available'] is True


def test_reserve_slug_in_use(client, capsys):
    onboard(client)
    assert admin_cli.reserve_slug('acme-plumbing', db_path=client.db_path) is False
    assert 'slug_in_use' in capsys.readouterr().out


def test_reset_onboarding_keeps_sign_in(client):
    onboard(client)
    actions = [row[0] for row in admin_cli.list_actions('Owner@Example.com', db_path=client.db_path)]
    assert actions == ['signed_in', 'google_connected', 'finished_onboarding']

    assert admin_cli.reset_onboarding('owner@example.com', db_path=client.db_path) == 2
    assert client.post('/api/next-user-step', json={}).get_json()['next_action'] == 'google_connected'

    assert admin_cli.reset_onboarding('owner@example.com', keep_sign_in=False, db_path=client.db_path) == 1
    assert admin_cli.list_actions('owner@example.com', db_path=client.db_path) == []


def test_unknown_email(client, capsys):
    assert admin_cli.reset_onboarding('nobody@example.com', db_path=client.db_path) is None
    assert admin_cli.list_actions('nobody@example.com', db_path=client.db_path) == []
    assert capsys.readouterr().out.count('user_not_found') == 2


def test_main_dispatch(client, capsys):
    assert admin_cli.main(['--db', client.db_path, 'reserve-slug', '--slug', ' Careers ']) == 0
    assert 'reserved_rows=1' in capsys.readouterr().out
    admin_cli.main(['--db', client.db_path, 'release-slug', '--slug', 'careers'])
    assert 'released_rows=1' in capsys.readouterr().out


def test_backup_db_snapshot_and_prune(client, tmp_path, capsys):
    onboard(client)
    for stamp in ('20240101T000000Z', '20240102T000000Z', '20240103T000000Z'):
        (tmp_path / f'reviewremind_{stamp}.sqlite3.gz').write_bytes(b'old')

    archive = admin_cli.backup_db(str(tmp_path), keep=2, db_path=client.db_path)
    assert 'pruned=2' in capsys.readouterr().out
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        'reviewremind_20240103T000000Z.sqlite3.gz',
        archive.name,
    ]
    assert not list(tmp_path.glob('*.sqlite3'))

    restored = tmp_path / 'restored.sqlite3'
    restored.write_bytes(gzip.decompress(archive.read_bytes()))
    conn = sqlite3.connect(str(restored))
    count = conn.execute('SELECT COUNT(*) FROM users').fetchone()[0]
    conn.close()
    assert count == 1


def test_backup_db_uploads_when_bucket_given(client, tmp_path, monkeypatch):
    uploads = []

    class FakeS3:
        def upload_file(self, filename, bucket, key):
            uploads.append((filename, bucket, key))

    monkeypatch.setattr(admin_cli.boto3, 'client', lambda *args, **kwargs: FakeS3())
    admin_cli.main(['--db', client.db_path, 'backup-db', '--dir', str(tmp_path), '--bucket', 'rr-backups'])
    archive = next(tmp_path.glob('reviewremind_*.sqlite3.gz'))
    assert uploads == [(str(archive), 'rr-backups', f'db/{archive.name}')]
