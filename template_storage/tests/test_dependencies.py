import os
import unittest
from unittest import mock

from template_storage.bucket import InMemoryBucketClient, S3BucketClient
from template_storage.config import Settings, bucket_config_from_settings
from template_storage.dependencies import _bucket_client

AWS_ENV = {
    "STORAGE_BUCKET": "acme-templates",
    "STORAGE_REGION": "eu-west-1",
    "AWS_ACCESS_KEY_ID": "key",
    "AWS_SECRET_ACCESS_KEY": "secret",
}


def _settings(env: dict) -> Settings:
    with mock.patch.dict(os.environ, env, clear=True):
        return Settings(_env_file=None)


class BucketClientSelectionTests(unittest.TestCase):
    def test_plain_s3_without_endpoint_uses_real_client(self):
        settings = _settings(AWS_ENV)
        with mock.patch("template_storage.bucket.boto3.client") as boto_client:
            client = _bucket_client(settings)

        self.assertIsInstance(client, S3BucketClient)
        kwargs = boto_client.call_args.kwargs
        self.assertIsNone(kwargs["endpoint_url"])
        self.assertEqual(kwargs["region_name"], "eu-west-1")
        self.assertEqual(
            bucket_config_from_settings(settings).public_base_url,
            "https://acme-templates.s3.eu-west-1.amazonaws.com",
        )

    def test_custom_endpoint_is_passed_through(self):
        settings = _settings({**AWS_ENV, "STORAGE_ENDPOINT": "https://s3.example.test/"})
        with mock.patch("template_storage.bucket.boto3.client") as boto_client:
            _bucket_client(settings)
        self.assertEqual(boto_client.call_args.kwargs["endpoint_url"], "https://s3.example.test/")
        self.assertEqual(
            bucket_config_from_settings(settings).public_base_url,
            "https://s3.example.test/acme-templates",
        )

    def test_missing_credentials_fall_back_with_warning(self):
        settings = _settings({"STORAGE_BUCKET": "acme-templates"})
        with self.assertLogs("template_storage.dependencies", level="WARNING") as logs:
            client = _bucket_client(settings)
        self.assertIsInstance(client, InMemoryBucketClient)
        self.assertIn("Bucket credentials not set", logs.output[0])

    def test_in_memory_toggle(self):
        settings = _settings({**AWS_ENV, "TEMPLATE_STORAGE_USE_IN_MEMORY_BACKENDS": "true"})
        self.assertIsInstance(_bucket_client(settings), InMemoryBucketClient)


if __name__ == "__main__":
    unittest.main()
