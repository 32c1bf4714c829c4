"""Blob storage for uploaded files: the upload directory mounted at /uploads."""
import logging
import os
import uuid
from dataclasses import dataclass
from typing import BinaryIO, Optional

import config
from errors import UpstreamServiceError

logger = logging.getLogger(__name__)


@dataclass
class StoredBlob:
    url: str
    storage_id: str
    format: Optional[str]


class BlobStore:
    def __init__(self, root: str = config.UPLOAD_DIR, url_prefix: str = config.UPLOAD_URL_PREFIX):
        self.root = root
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def save(self, folder: str, filename: str, stream: BinaryIO) -> StoredBlob:
        ext = os.path.splitext(filename or "")[1].lower()
        safe_folder = folder.replace("..", "").replace("/", "_")
        storage_id = f"{safe_folder}/{uuid.uuid4().hex}{ext}"
        path = os.path.join(self.root, storage_id)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as buffer:
                buffer.write(stream.read())
        except OSError as e:
            raise UpstreamServiceError(f"Could not store {filename}: {e}")
        return StoredBlob(url=f"{self.url_prefix}/{storage_id}", storage_id=storage_id, format=ext.lstrip(".") or None)


blob_store = BlobStore()


def get_blob_store() -> BlobStore:
    return blob_store
