"""
Temporary Image Storage

Generated slide images are first written to the `temp-images` bucket under a
per-user, per-session folder. When a lesson is saved they are copied to the
`lesson-assets` bucket and the temporary copies are removed.
"""

import base64
import logging
import random
import re
import string
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

TEMP_BUCKET = "temp-images"
PERMANENT_BUCKET = "lesson-assets"
IMAGE_CONTENT_TYPE = "image/webp"
LIST_PAGE_SIZE = 100

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-z]+;base64,")
_FILE_NAME_ORDER = re.compile(r"^img_(\d+)_(\d+)")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def _file_order(name: str):
    match = _FILE_NAME_ORDER.match(name)
    if match is None:
        return (1, 0, 0, name)
    return (0, int(match.group(1)), int(match.group(2)), name)


@dataclass
class TemporaryImage:
    """A stored temporary image."""
    temp_url: str
    file_name: str
    file_path: str
    session_id: str
    prompt: str = ""
    width: int = 0
    height: int = 0


@dataclass
class ImageMigrationResult:
    temp_url: str
    permanent_url: str
    success: bool
    error: Optional[str] = None


class TemporaryImageService:
    """Stores, migrates and cleans up temporary slide images in Supabase Storage."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    @staticmethod
    def generate_session_id() -> str:
        return f"session_{_now_ms()}_{_random_suffix()}"

    @staticmethod
    def session_folder(user_id: str, session_id: str) -> str:
        return f"temp/{user_id}/{session_id}"

    def upload_temporary_image(
        self,
        image_base64: str,
        session_id: str,
        user_id: str,
        index: int,
        prompt: str = "",
        width: int = 0,
        height: int = 0,
    ) -> TemporaryImage:
        """
        Upload a base64 image (raw or data URL) to the temporary bucket.

        Returns:
            TemporaryImage with the public URL
        """
        raw = _DATA_URL_PREFIX.sub("", image_base64)
        data = base64.b64decode(raw)

        file_name = f"img_{index}_{_now_ms()}.webp"
        file_path = f"{self.session_folder(user_id, session_id)}/{file_name}"

        bucket = self.supabase.storage.from_(TEMP_BUCKET)
        bucket.upload(file_path, data, {"content-type": IMAGE_CONTENT_TYPE, "upsert": "true"})
        temp_url = bucket.get_public_url(file_path)

        logger.info(f"📦 [TempImages] Uploaded {file_path} ({len(data)} bytes)")
        return TemporaryImage(
            temp_url=temp_url,
            file_name=file_name,
            file_path=file_path,
            session_id=session_id,
            prompt=prompt,
            width=width,
            height=height,
        )

    def migrate_to_permanent(self, temp_images: List[TemporaryImage], lesson_id: str) -> List[ImageMigrationResult]:
        """Copy temporary images into the lesson's permanent folder."""
        results: List[ImageMigrationResult] = []
        temp_bucket = self.supabase.storage.from_(TEMP_BUCKET)
        permanent_bucket = self.supabase.storage.from_(PERMANENT_BUCKET)

        for i, image in enumerate(temp_images):
            try:
                data = temp_bucket.download(image.file_path)
                permanent_path = f"lessons/{lesson_id}/slide-{i + 1}-{_now_ms()}.webp"
                permanent_bucket.upload(permanent_path, data, {"content-type": IMAGE_CONTENT_TYPE, "upsert": "true"})
                permanent_url = permanent_bucket.get_public_url(permanent_path)
                temp_bucket.remove([image.file_path])
                results.append(ImageMigrationResult(temp_url=image.temp_url, permanent_url=permanent_url, success=True))
            except Exception as e:
                logger.warning(f"⚠️ [TempImages] Migration failed for {image.file_path}: {e}")
                results.append(ImageMigrationResult(
                    temp_url=image.temp_url, permanent_url="", success=False, error=f"Migration error: {e}",
                ))

        successful = sum(1 for r in results if r.success)
        logger.info(f"✅ [TempImages] Migrated {successful}/{len(results)} images for lesson {lesson_id}")
        return results

    @staticmethod
    def rewrite_html_urls(html: str, results: List[ImageMigrationResult]) -> str:
        """Point slide HTML at the permanent copies."""
        for result in results:
            if result.success:
                html = html.replace(result.temp_url, result.permanent_url)
        if any(r.success for r in results):
            html = html.replace(' data-storage-type="temporary"', "")
        return html

    @staticmethod
    def _list_folder(bucket, folder: str) -> List[Dict]:
        """List every file in a folder, one page at a time."""
        files: List[Dict] = []
        offset = 0
        while True:
            page = bucket.list(folder, {"limit": LIST_PAGE_SIZE, "offset": offset}) or []
            files.extend(page)
            if len(page) < LIST_PAGE_SIZE:
                return files
            offset += LIST_PAGE_SIZE

    def cleanup_session(self, user_id: str, session_id: str) -> int:
        """Remove every temporary file for a session. Returns the count removed."""
        folder = self.session_folder(user_id, session_id)
        bucket = self.supabase.storage.from_(TEMP_BUCKET)
        files = self._list_folder(bucket, folder)
        if not files:
            return 0

        paths = [f"{folder}/{item['name']}" for item in files]
        for start in range(0, len(paths), LIST_PAGE_SIZE):
            bucket.remove(paths[start:start + LIST_PAGE_SIZE])
        logger.info(f"🧹 [TempImages] Removed {len(paths)} files from {folder}")
        return len(paths)

    def find_session_images(self, user_id: str, session_id: str) -> List[TemporaryImage]:
        """List the stored images of a session in generation order (image index, then upload time)."""
        folder = self.session_folder(user_id, session_id)
        bucket = self.supabase.storage.from_(TEMP_BUCKET)
        files = self._list_folder(bucket, folder)
        images = []
        for item in sorted(files, key=lambda f: _file_order(f["name"])):
            path = f"{folder}/{item['name']}"
            images.append(TemporaryImage(
                temp_url=bucket.get_public_url(path),
                file_name=item["name"],
                file_path=path,
                session_id=session_id,
            ))
        return images


def build_url_map(results: List[ImageMigrationResult]) -> Dict[str, str]:
    return {r.temp_url: r.permanent_url for r in results if r.success}
