"""
S3MediaStore against a stubbed S3 client.
"""

import boto3
import pytest
from botocore.stub import Stubber

from errors import ResourceError
from media_storage import S3MediaStore


@pytest.fixture
def s3_client():
    return boto3.client(
        's3',
        region_name='us-east-1',
        aws_access_key_id='testing',
        aws_secret_access_key='testing',
    )


@pytest.fixture
def media_store(s3_client):
    return S3MediaStore('card-media', 'https://cdn.test/', client=s3_client)


def test_upload_returns_public_url(media_store, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_response(
            'put_object',
            {'ETag': '"abc123"'},
            {'Bucket': 'card-media', 'Key': 'alice/anki-media/cat.png', 'Body': b'\x89PNG', 'ContentType': 'image/png'},
        )
        url = media_store.upload('alice/anki-media/cat.png', b'\x89PNG', 'image/png')
        stubber.assert_no_pending_responses()

    assert url == 'https://cdn.test/alice/anki-media/cat.png'


def test_public_url_is_quoted(media_store):
    assert media_store.public_url('alice/anki-media/my cat.png') == 'https://cdn.test/alice/anki-media/my%20cat.png'


def test_client_error_becomes_resource_error(media_store, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_client_error('put_object', service_error_code='AccessDenied', http_status_code=403)
        with pytest.raises(ResourceError) as excinfo:
            media_store.upload('alice/anki-media/cat.png', b'\x89PNG', 'image/png')

    assert 'AccessDenied' in str(excinfo.value)


def test_import_through_s3(media_store, s3_client, build_apkg, store):
    from anki_import import import_collection

    archive = build_apkg(
        [dict(card_id=1600000000001, note_id=1, deck_id=2)],
        notes={1: ['<img src="cat.png">', 'gato']},
        media={'cat.png': b'\x89PNG', 'dog.jpg': b'\xff\xd8'},
    )

    with Stubber(s3_client) as stubber:
        stubber.add_response(
            'put_object', {},
            {'Bucket': 'card-media', 'Key': 'alice/anki-media/cat.png', 'Body': b'\x89PNG', 'ContentType': 'image/png'},
        )
        stubber.add_client_error('put_object', service_error_code='AccessDenied', http_status_code=403)
        summary = import_collection(archive, 'alice', decks=store, media=media_store, cards=store)

    card, = store.find_cards('alice')
    assert card.front == '<img src="https://cdn.test/alice/anki-media/cat.png">'
    assert summary.media_uploaded == 1
    assert summary.media_failed == 1
