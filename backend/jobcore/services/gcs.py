"""Google Cloud Storage helper service."""
from __future__ import annotations

from typing import Tuple

from google.cloud import storage

from ..exceptions import NotFoundError
from ..models import ImagePart


class GCSService:
    """Wrapper around google-cloud-storage for resolving stored image references."""

    def __init__(self, bucket_name: str) -> None:
        self.bucket_name = bucket_name
        self._client = storage.Client()
        self._bucket = self._client.bucket(bucket_name)

    def _split_ref(self, ref: str) -> Tuple[str, str]:
        """Accept `gs://bucket/path` or a bare object path in the default bucket."""
        if ref.startswith("gs://"):
            bucket, _, path = ref[len("gs://"):].partition("/")
            return bucket, path
        return self.bucket_name, ref.lstrip("/")

    def download_image(self, ref: str) -> ImagePart:
        bucket_name, path = self._split_ref(ref)
        bucket = self._bucket if bucket_name == self.bucket_name else self._client.bucket(bucket_name)
        blob = bucket.get_blob(path)
        if blob is None:
            raise NotFoundError(f"Image not found: {ref}")
        return ImagePart(data=blob.download_as_bytes(), mimeType=blob.content_type or "image/jpeg")
