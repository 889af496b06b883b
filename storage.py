"""Blob storage for video and cover image files.

The rest of the backend only sees :class:`BlobStore`: files are put into a
folder, addressed by a stable id and served from a public URL. The local
implementation keeps each blob next to a small JSON metadata file.
"""
import json
import logging
import mimetypes
import os
import secrets
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

VIDEOS = 'videos'
IMAGES = 'images'


@dataclass
class BlobRef:
    id: str
    folder: str
    filename: str
    content_type: str
    size: int
    url: str


class BlobStore:
    def put(self, folder: str, filename: str, data: bytes, content_type: Optional[str] = None) -> BlobRef:
        raise NotImplementedError

    def get(self, folder: str, blob_id: str) -> BlobRef:
        raise NotImplementedError

    def path(self, folder: str, blob_id: str) -> str:
        raise NotImplementedError

    def delete(self, folder: str, blob_id: str) -> bool:
        raise NotImplementedError

    def list_folder(self, folder: str) -> List[BlobRef]:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, root: str, url_templates: Optional[Dict[str, str]] = None, base_url: str = ''):
        self.root = root
        self.base_url = base_url.rstrip('/')
        self.url_templates = url_templates or {
            VIDEOS: '/api/video/{id}',
            IMAGES: '/api/image/{id}',
        }
        for folder in self.url_templates:
            os.makedirs(os.path.join(self.root, folder), exist_ok=True)

    def _folder(self, folder: str) -> str:
        if folder not in self.url_templates:
            raise ValidationError(f"Unknown blob folder: {folder}")
        return os.path.join(self.root, folder)

    def _meta_path(self, folder: str, blob_id: str) -> str:
        if not blob_id.isalnum():
            raise NotFoundError(f"Blob {blob_id} not found")
        return os.path.join(self._folder(folder), f"{blob_id}.json")

    def url(self, folder: str, blob_id: str) -> str:
        return self.base_url + self.url_templates[folder].format(id=blob_id)

    def put(self, folder, filename, data, content_type=None):
        blob_id = secrets.token_hex(12)
        content_type = content_type or mimetypes.guess_type(filename)[0] or 'application/octet-stream'
        ref = BlobRef(
            id=blob_id,
            folder=folder,
            filename=filename,
            content_type=content_type,
            size=len(data),
            url=self.url(folder, blob_id)
        )
        with open(os.path.join(self._folder(folder), blob_id), 'wb') as f:
            f.write(data)
        with open(self._meta_path(folder, blob_id), 'w', encoding='utf-8') as f:
            json.dump(asdict(ref), f, ensure_ascii=False)
        logger.info(f"📁 Stored {folder}/{blob_id} ({filename}, {len(data)} bytes)")
        return ref

    def get(self, folder, blob_id):
        meta_path = self._meta_path(folder, blob_id)
        try:
            with open(meta_path, 'r', encoding='utf-8') as f:
                return BlobRef(**json.load(f))
        except FileNotFoundError:
            raise NotFoundError(f"Blob {folder}/{blob_id} not found")

    def path(self, folder, blob_id):
        self.get(folder, blob_id)
        return os.path.join(self._folder(folder), blob_id)

    def delete(self, folder, blob_id):
        meta_path = self._meta_path(folder, blob_id)
        removed = False
        for file_path in (os.path.join(self._folder(folder), blob_id), meta_path):
            if os.path.exists(file_path):
                os.remove(file_path)
                removed = True
        return removed

    def list_folder(self, folder):
        refs = []
        for filename in sorted(os.listdir(self._folder(folder))):
            if filename.endswith('.json'):
                refs.append(self.get(folder, filename[:-len('.json')]))
        return refs
