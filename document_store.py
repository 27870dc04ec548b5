import logging
import os
from pathlib import Path
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from resolution_config import ResolutionConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)


def build_s3_client(region: str):
    """S3 client using explicit keys when present, else the default credential chain."""
    aws_access_key = os.getenv('AWS_ACCESS_KEY_ID')
    aws_secret_key = os.getenv('AWS_SECRET_ACCESS_KEY')

    if aws_access_key and aws_secret_key:
        return boto3.client(
            's3',
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            region_name=region
        )
    return boto3.client('s3', region_name=region)


class DocumentStore:
    """Local cache of invoice PDFs backed by S3 (<prefix><file_name>)."""

    def __init__(self, config: ResolutionConfig = DEFAULT_CONFIG, s3_client=None, allow_download: bool = True):
        self.config = config
        self.allow_download = allow_download
        self.base_dir = Path(config.downloads_dir)
        self._s3_client = s3_client

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = build_s3_client(self.config.aws_region)
        return self._s3_client

    def local_path(self, file_name: str) -> Path:
        return self.base_dir / Path(file_name).name

    def s3_key(self, file_name: str) -> str:
        return (self.config.s3_key_prefix + file_name).replace('//', '/')

    def download(self, file_name: str) -> Path:
        """Download a document from S3. Raises on failure; a partial file is removed."""
        key = self.s3_key(file_name)
        target = self.local_path(file_name)
        target.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Downloading from bucket: {self.config.s3_bucket_name}, key: {key}")
        try:
            response = self.s3_client.get_object(Bucket=self.config.s3_bucket_name, Key=key)
            target.write_bytes(response['Body'].read())
        except (BotoCoreError, ClientError):
            target.unlink(missing_ok=True)
            raise

        logger.info(f"Downloaded {target.name} to {target}")
        return target

    def ensure_local(self, file_name: str) -> Path:
        """Return the cached copy, downloading it first when missing and allowed."""
        path = self.local_path(file_name)
        if path.exists():
            return path
        if not self.allow_download:
            raise FileNotFoundError(f"{file_name} not downloaded and downloads are disabled")
        return self.download(file_name)
