import json
import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, init_db
from services import review_writer


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
        yield c
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def model(monkeypatch):
    """Replace the Gemini call; tests set ``model.reply`` and read ``model.prompts``."""
    class FakeModel:
        reply = ''
        prompts = []

    fake = FakeModel()
    fake.prompts = []

    def generate_text(prompt, temperature=0.4):
        fake.prompts.append(prompt)
        return fake.reply

    monkeypatch.setattr(review_writer, 'generate_text', generate_text)
    return fake


def create_tenant(client, email='owner@example.com', business='Acme Plumbing'):
    resp = client.post('/api/sign-up', json={'name': 'Pat Owner', 'email': email, 'password': 'StrongPass1'})
    client.post('/api/add-user', json={'email': email, 'businessName': business, 'description': 'Plumbing and heating'})
    return resp.get_json()['userId']


def add_reviewed_client(client, review, sentiment='good', **extra):
    payload = {'name': 'Jane Client', 'sentiment': sentiment, 'review': review}
    payload.update(extra)
    return client.post('/api/add-client', json=payload).get_json()['client']['id']


def test_add_phrases_counts_mentions(client):
    create_tenant(client)
    add_reviewed_client(client, 'Fast service and a fast reply')
    resp = client.post('/api/settings/review-settings/add-phrases', json={
        'phrases': ['fast', {'phrase': 'FAST', 'sentiment': 'bad'}, '  friendly   staff ', 42],
    })
    body = resp.get_json()
    assert body['added'] == 2
    assert body['skipped_existing'] == 0
    details = {d['phrase']: d for d in body['details']}
    assert details['fast']['sentiment'] == 'bad'
    assert details['fast']['counts'] == 2
    assert details['friendly staff']['sentiment'] == 'good'
    assert details['friendly staff']['counts'] == 0


def test_add_phrases_skips_existing(client):
    create_tenant(client)
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': ['On time']})
    body = client.post('/api/settings/review-settings/add-phrases', json={'phrases': ['on TIME']}).get_json()
    assert body['added'] == 0
    assert body['skipped_existing'] == 1
    assert body['message'] == 'All provided phrases already exist.'


def test_add_phrases_validation(client):
    create_tenant(client)
    resp = client.post('/api/settings/review-settings/add-phrases', json={'phrases': []})
    assert resp.get_json()['error'] == 'NO_PHRASES_GIVEN'
    resp = client.post('/api/settings/review-settings/add-phrases', json={'phrases': ['   ']})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'NO_VALID_PHRASES'


def test_settings_and_paged_phrase_lists(client):
    create_tenant(client)
    add_reviewed_client(client, 'Clean work, clean van')
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': ['clean', 'polite']})

    listed = client.post('/api/settings/review-settings/get-phrases', json={}).get_json()
    assert listed['count'] == 2
    assert listed['phrases'][0] == {
        'phrase_id': listed['phrases'][0]['phrase_id'],
        'phrase': 'clean',
        'sentiment': 'good',
        'total_count': 2,
    }

    first = client.post('/api/reviews/get-phrases', json={'limit': 1}).get_json()
    assert first['count'] == 1
    assert first['nextCursor'] == '1'
    second = client.post('/api/reviews/get-phrases', json={'limit': 1, 'cursor': first['nextCursor']}).get_json()
    assert second['count'] == 1
    assert second['phrases'][0]['id'] != first['phrases'][0]['id']
    everything = client.post('/api/reviews/get-phrases', json={}).get_json()
    assert everything['count'] == 2
    assert everything['nextCursor'] is None


def test_delete_phrase(client):
    create_tenant(client)
    added = client.post('/api/settings/review-settings/add-phrases', json={'phrases': ['tidy']}).get_json()
    phrase_id = added['details'][0]['id']
    with app.app_context():
        conn = db_connect()
        conn.execute(
            "INSERT INTO excerpts (phrase_id, excerpt, created_at) VALUES (?, 'very tidy', '2025-01-01')",
            (phrase_id,),
        )
        conn.commit()
        conn.close()

    assert client.post('/api/settings/review-settings/delete-phrases', json={}).get_json()['error'] == 'MISSING_PHRASE_ID'
    resp = client.post('/api/settings/review-settings/delete-phrases', json={'phraseId': 'nope'})
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'PHRASE_NOT_FOUND'

    body = client.post('/api/settings/review-settings/delete-phrases', json={'phraseId': phrase_id}).get_json()
    assert body['deleted_phrases'] == 1
    assert body['deleted_excerpts'] == 1
    assert client.post('/api/settings/review-settings/get-phrases', json={}).get_json()['count'] == 0


def test_generate_new_phrases_without_reviews(client, model):
    create_tenant(client)
    body = client.post('/api/settings/review-settings/generate-new-phrases', json={}).get_json()
    assert body['new_phrases'] == []
    assert body['message'] == 'No reviews found to analyze.'
    assert model.prompts == []


def test_generate_new_phrases_merges_model_output(client, model):
    create_tenant(client)
    add_reviewed_client(client, 'Fast service but arrived late')
    model.reply = '```json\n' + json.dumps({'phrases': [
        {'phrase': 'Fast service', 'mention_count': 3, 'sentiment': 'good'},
        {'phrase': 'fast  service', 'mention_count': 2},
        {'phrase': 'Late arrival', 'mention_count': 4, 'sentiment': 'bad'},
        {'phrase': '', 'mention_count': 9},
    ]}) + '\n```'
    body = client.post('/api/settings/review-settings/generate-new-phrases', json={}).get_json()
    assert body['new_phrases'] == [
        {'phrase': 'Fast service', 'counts': 5, 'sentiment': 'good'},
        {'phrase': 'Late arrival', 'counts': 4, 'sentiment': 'bad'},
    ]
    assert 'Fast service but arrived late' in model.prompts[0]


def test_generate_new_phrases_bad_model_output(client, model):
    create_tenant(client)
    add_reviewed_client(client, 'Great')
    model.reply = 'sorry, no json today'
    resp = client.post('/api/settings/review-settings/generate-new-phrases', json={})
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'MODEL_PARSE_ERROR'

    model.reply = '{"topics": []}'
    resp = client.post('/api/settings/review-settings/generate-new-phrases', json={})
    assert resp.get_json()['error'] == 'BAD_MODEL_SHAPE'


def test_add_generated_phrases_upserts(client):
    create_tenant(client)
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': [{'phrase': 'Late arrival', 'sentiment': 'bad'}]})
    body = client.post('/api/settings/review-settings/add-generated-phrases', json={'phrases': [
        {'phrase': 'late ARRIVAL', 'counts': 7},
        {'phrase': 'Friendly', 'counts': '3', 'sentiment': 'good'},
        {'phrase': '   '},
        'not-a-dict',
    ]}).get_json()
    assert body['requested'] == 2
    assert body['skipped_invalid'] == 2
    assert [p['phrase'] for p in body['inserted']] == ['Friendly']
    assert body['updated'][0]['counts'] == 7
    assert body['updated'][0]['sentiment'] == 'bad'

    resp = client.post('/api/settings/review-settings/add-generated-phrases', json={'phrases': [{'phrase': ''}]})
    assert resp.status_code == 400
    assert resp.get_json()['skippedInvalid'] == 1


def test_generate_good_reviews_uses_client_items(client, model):
    create_tenant(client)
    client_id = client.post('/api/add-client', json={
        'name': 'Jane Client',
        'item_description': 'Boiler service | boiler SERVICE, Pipe repair',
    }).get_json()['client']['id']
    model.reply = '{"review_1": "Lovely job on the boiler.", "review_2": "Quick pipe repair."}'

    resp = client.post('/api/reviews/generate-good-reviews', json={'clientId': client_id, 'phrases': ['friendly', 'on time']})
    assert resp.get_json()['reviews'] == ['Lovely job on the boiler.', 'Quick pipe repair.']
    prompt = model.prompts[0]
    assert 'Business: Acme Plumbing' in prompt
    assert 'Services the customer received: Boiler service; Pipe repair' in prompt
    assert 'friendly; on time' in prompt
    assert 'Plumbing and heating' in prompt


def test_generate_good_reviews_test_client_skips_items(client, model):
    create_tenant(client)
    model.reply = 'First draft.\n\nSecond draft.'
    resp = client.post('/api/reviews/generate-good-reviews', json={'clientId': 'test', 'phrases': ['friendly']})
    assert resp.get_json()['reviews'] == ['First draft.', 'Second draft.']
    assert 'Services the customer received' not in model.prompts[0]


def test_generate_good_reviews_validation(client, model):
    client.post('/api/sign-up', json={'name': 'Pat', 'email': 'pat@example.com', 'password': 'StrongPass1'})
    resp = client.post('/api/reviews/generate-good-reviews', json={'phrases': ['friendly']})
    assert resp.get_json()['error'] == 'DISPLAY_NAME_MISSING_FOR_USER'

    client.post('/api/add-user', json={'email': 'pat@example.com', 'businessName': 'Pat Co'})
    assert client.post('/api/reviews/generate-good-reviews', json={'phrases': []}).get_json()['error'] == 'INVALID_PHRASES'
    too_many = [f'phrase {i}' for i in range(11)]
    resp = client.post('/api/reviews/generate-good-reviews', json={'phrases': too_many})
    assert resp.status_code == 400

    model.reply = '   '
    resp = client.post('/api/reviews/generate-good-reviews', json={'phrases': ['friendly']})
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'BAD_MODEL_OUTPUT'


def test_generate_good_reviews_requires_api_key(client, monkeypatch):
    create_tenant(client)
    monkeypatch.setitem(app.config, 'GEMINI_API_KEY', None)
    resp = client.post('/api/reviews/generate-good-reviews', json={'phrases': ['friendly']})
    assert resp.status_code == 503
    assert resp.get_json()['error'] == 'AI_NOT_CONFIGURED'


def test_get_phrases_ordered_by_usage(client):
    user_id = create_tenant(client)
    add_reviewed_client(client, 'Clean work, clean van, clean finish')
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': [{'phrase': 'clean', 'sentiment': 'good'}]})
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': [{'phrase': 'polite', 'sentiment': 'good'}]})
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': [{'phrase': 'van', 'sentiment': 'bad'}]})

    with app.app_context():
        conn = db_connect()
        rows = conn.execute(
            'SELECT phrase, counts, good_count, bad_count FROM phrases WHERE user_id = ? ORDER BY phrase',
            (user_id,),
        ).fetchall()
        conn.close()
    assert rows == [('clean', 3, 3, 0), ('polite', 0, 0, 0), ('van', 1, 0, 1)]

    body = client.post('/api/reviews/get-phrases', json={}).get_json()
    assert [p['phrase'] for p in body['phrases']] == ['clean', 'van', 'polite']


def test_add_generated_phrases_splits_counts_by_sentiment(client):
    user_id = create_tenant(client)
    client.post('/api/settings/review-settings/add-phrases', json={'phrases': [{'phrase': 'Late arrival', 'sentiment': 'bad'}]})
    client.post('/api/settings/review-settings/add-generated-phrases', json={'phrases': [
        {'phrase': 'late arrival', 'counts': 4},
        {'phrase': 'Friendly', 'counts': 2, 'sentiment': 'good'},
    ]})

    with app.app_context():
        conn = db_connect()
        rows = conn.execute(
            'SELECT phrase, good_count, bad_count FROM phrases WHERE user_id = ? ORDER BY phrase',
            (user_id,),
        ).fetchall()
        conn.close()
    assert rows == [('Friendly', 2, 0), ('Late arrival', 0, 4)]
