#!/usr/bin/env python3
"""
Test suite for artifact_store.py

- LocalDirectoryStore
- S3ArtifactStore (mocked)
- Factory function
"""

import os
import shutil
import stat
import sys
import tempfile
import unittest
from unittest.mock import MagicMock, patch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botocore.exceptions import ClientError

from artifact_store import (
    LocalDirectoryStore,
    S3ArtifactStore,
    StorageError,
    create_artifact_store,
)


class TestLocalDirectoryStore(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.outdir = os.path.join(self.temp_dir, "f2b_cymru_out")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_creates_directory(self):
        store = LocalDirectoryStore(self.outdir)
        self.assertTrue(os.path.isdir(self.outdir))
        self.assertEqual(store.location, os.path.realpath(self.outdir))

    def test_write_replaces_content(self):
        store = LocalDirectoryStore(self.outdir)
        store.write("banned_ips.txt", "1.2.3.4\n")
        path = store.write("banned_ips.txt", "5.6.7.8\n")

        with open(path) as f:
            self.assertEqual(f.read(), "5.6.7.8\n")
        self.assertFalse(os.path.exists(f"{path}.tmp"))

    def test_executable_flag(self):
        store = LocalDirectoryStore(self.outdir)
        path = store.write("apply_cmds.sh", "#!/usr/bin/env bash\n", executable=True)
        self.assertTrue(os.stat(path).st_mode & stat.S_IXUSR)

    def test_unwritable_location(self):
        blocker = os.path.join(self.temp_dir, "file")
        with open(blocker, "w") as f:
            f.write("x")
        with self.assertRaises(StorageError):
            LocalDirectoryStore(os.path.join(blocker, "out"))


class TestS3ArtifactStore(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.local = LocalDirectoryStore(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch("artifact_store.boto3")
    def test_write_mirrors_to_s3(self, mock_boto3):
        mock_s3 = MagicMock()
        mock_boto3.client.return_value = mock_s3
        store = S3ArtifactStore(self.local, bucket="sec-bucket", prefix="/f2b/sshd/")

        path = store.write("recommendations.txt", "report\n")

        self.assertTrue(os.path.exists(path))
        mock_s3.put_object.assert_called_once_with(
            Bucket="sec-bucket",
            Key="f2b/sshd/recommendations.txt",
            Body=b"report\n",
            ContentType="text/plain",
        )

    @patch("artifact_store.boto3")
    def test_upload_failure_keeps_local_copy(self, mock_boto3):
        mock_s3 = MagicMock()
        mock_s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        mock_boto3.client.return_value = mock_s3
        store = S3ArtifactStore(self.local, bucket="sec-bucket", prefix="f2b")

        with self.assertLogs("artifact_store", level="WARNING"):
            path = store.write("banned_ips.txt", "1.2.3.4\n")

        with open(path) as f:
            self.assertEqual(f.read(), "1.2.3.4\n")


class TestCreateArtifactStore(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_local_default(self):
        store = create_artifact_store(self.temp_dir)
        self.assertIsInstance(store, LocalDirectoryStore)

    @patch("artifact_store.boto3")
    def test_s3_prefix_includes_jail(self, mock_boto3):
        store = create_artifact_store(
            self.temp_dir, jail="sshd", s3_bucket="sec-bucket", s3_prefix="f2b-escalate"
        )
        self.assertIsInstance(store, S3ArtifactStore)
        self.assertEqual(store.key_for("apply_cmds.sh"), "f2b-escalate/sshd/apply_cmds.sh")
        self.assertEqual(mock_boto3.client.call_args[1]["region_name"], "us-east-1")


if __name__ == "__main__":
    unittest.main()
