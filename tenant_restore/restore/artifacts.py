"""DDL artifact storage on S3.

Documents are stored under ``<ddl_prefix>/<database>/<run_id>/<kind>.sql``
with the schema list and run id as object metadata.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from ..aws.client import create_boto_client
from ..models.ddl_artifact import ArtifactKind, DDLArtifactSet
from .naming import ResourceNames

logger = logging.getLogger(__name__)


class DDLArtifactStore:
    """Reads and writes DDL documents in the artifact bucket."""

    def __init__(
        self,
        bucket: str,
        ddl_prefix: str = "ddl",
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
    ) -> None:
        self.bucket = bucket
        self.ddl_prefix = ddl_prefix
        self.s3 = create_boto_client("s3", region_name=region, profile_name=aws_profile)

    def object_arn(self, key: str) -> str:
        return f"arn:aws:s3:::{self.bucket}/{key}"

    def put(self, key: str, body: str, run_id: str, schemas: Iterable[str]) -> str:
        """Write one document.

        Returns:
            The object key
        """
        self.s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType="application/sql",
            ServerSideEncryption="AES256",
            Metadata={"run-id": run_id, "schemas": ",".join(schemas)},
        )
        logger.info(f"Uploaded s3://{self.bucket}/{key} ({len(body)} bytes)")
        return key

    def get(self, key: str) -> str:
        """Read one document.

        Raises:
            FileNotFoundError: If the object does not exist
        """
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"s3://{self.bucket}/{key} not found") from e
            raise
        return response["Body"].read().decode("utf-8")

    def list_keys(self, prefix: str) -> List[str]:
        """Keys of every object under ``prefix``."""
        keys: List[str] = []
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def upload_set(self, artifacts: DDLArtifactSet, names: ResourceNames, database: str) -> Dict[str, str]:
        """Write the pre-copy, post-copy and complete documents of a run.

        Returns:
            Mapping of artifact kind value to object key
        """
        keys: Dict[str, str] = {}
        for kind, body in artifacts.documents().items():
            key = names.artifact_key(self.ddl_prefix, database, kind)
            keys[kind.value] = self.put(key, body, artifacts.run_id, artifacts.schemas)
        return keys

    def upload_rollback(self, script: str, names: ResourceNames, database: str, schemas: Iterable[str]) -> str:
        key = names.artifact_key(self.ddl_prefix, database, ArtifactKind.ROLLBACK)
        return self.put(key, script, names.run_id, schemas)
