import logging
import re
from pathlib import Path
from typing import Optional

from config import get_settings
from models import new_id

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class LocalObjectStore:
    """Attachment files kept on local disk and addressed by URL."""

    def __init__(self, root: Optional[Path] = None, base_url: Optional[str] = None) -> None:
        settings = get_settings()
        self.root = Path(root or settings.storage_dir)
        self.base_url = (base_url if base_url is not None else settings.storage_base_url).rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def upload(self, filename: str, content: bytes, prefix: str = "") -> str:
        safe_name = _UNSAFE.sub("_", Path(filename or "file").name).strip("._") or "file"
        folder = self.root / prefix if prefix else self.root
        folder.mkdir(parents=True, exist_ok=True)
        stored = f"{new_id()}_{safe_name}"
        (folder / stored).write_bytes(content)
        relative = f"{prefix}/{stored}" if prefix else stored
        logger.info(f"attachment_stored: path={relative} bytes={len(content)}")
        return f"{self.base_url}/{relative}"

    def path_for(self, url: str) -> Path:
        if not url.startswith(f"{self.base_url}/"):
            raise ValueError("Attachment URL does not belong to this store")
        relative = url[len(self.base_url) + 1 :]
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError("Attachment URL does not belong to this store")
        return path

    def delete(self, url: str) -> bool:
        path = self.path_for(url)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"attachment_deleted: path={path.name}")
        return True
