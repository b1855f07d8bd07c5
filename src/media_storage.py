"""
S3MediaStore - Public media storage for imported card images

Uploads image payloads to S3 and returns the public URL the card HTML
should point at.

Usage:
    store = S3MediaStore('card-media', 'https://card-media.s3.amazonaws.com')
    url = store.upload('user-1/anki-media/cat.png', data, 'image/png')
"""

import logging
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import MEDIA_BUCKET, MEDIA_PUBLIC_BASE_URL
from errors import ResourceError

logger = logging.getLogger(__name__)


class S3MediaStore:

    def __init__(self, bucket=MEDIA_BUCKET, public_base_url=MEDIA_PUBLIC_BASE_URL, client=None):
        """
        Args:
            bucket (str): Target bucket
            public_base_url (str): URL prefix under which objects are publicly served
            client: boto3 S3 client (created on first use if omitted)
        """
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip('/')
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client('s3')
        return self._client

    def public_url(self, path):
        return f"{self.public_base_url}/{quote(path)}"

    def upload(self, path, data, content_type):
        """
        Stores ``data`` under ``path``, overwriting any existing object.

        Returns:
            str: Public URL of the object

        Raises:
            ResourceError: If S3 rejects the upload or is unreachable
        """
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 upload of {path} failed: {error_code}")
            raise ResourceError(f"Media upload failed for {path}: {error_code}")
        except BotoCoreError as e:
            logger.error(f"S3 upload of {path} failed: {e}")
            raise ResourceError(f"Media upload failed for {path}: {e}")

        logger.debug(f"Uploaded s3://{self.bucket}/{path} ({len(data)} bytes)")
        return self.public_url(path)
