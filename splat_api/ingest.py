import io
import logging
from pathlib import Path
from typing import Dict, List, NamedTuple, Sequence

from PIL import Image, UnidentifiedImageError

from .config import Settings
from .errors import InvalidRequest, WorkspaceError

logger = logging.getLogger(__name__)


class UploadedImage(NamedTuple):
    filename: str
    data: bytes


def safe_filename(name: str) -> str:
    """Return ``name`` if it is a plain file name, reject anything path-like."""
    if not name or not name.strip():
        raise InvalidRequest("uploaded image has no filename")
    if "/" in name or "\\" in name or "\x00" in name:
        raise InvalidRequest(f"invalid filename: {name!r}")
    if name in {".", ".."} or Path(name).name != name:
        raise InvalidRequest(f"invalid filename: {name!r}")
    return name


def _verify_image(name: str, data: bytes) -> None:
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise InvalidRequest(f"{name} is not a readable image") from exc


def validate_uploads(settings: Settings, images: Sequence[UploadedImage]) -> List[UploadedImage]:
    """Check every payload before anything touches the disk.

    Duplicate names collapse to the last payload, which is what writing them
    in order would have produced anyway.
    """
    if not images:
        raise InvalidRequest("please upload at least one image")

    by_name: Dict[str, UploadedImage] = {}
    for item in images:
        name = safe_filename(item.filename)
        if not item.data:
            raise InvalidRequest(f"{name} is empty")
        if len(item.data) > settings.max_upload_bytes:
            raise InvalidRequest(f"{name} exceeds {settings.max_upload_bytes} bytes")
        _verify_image(name, item.data)
        if name in by_name:
            logger.warning("Duplicate upload name %s, keeping the last one", name)
            del by_name[name]
        by_name[name] = UploadedImage(name, item.data)
    return list(by_name.values())


def save_uploads(in_dir: Path, images: Sequence[UploadedImage]) -> List[str]:
    saved = []
    for item in images:
        path = in_dir / safe_filename(item.filename)
        try:
            path.write_bytes(item.data)
        except OSError as exc:
            raise WorkspaceError(f"cannot store {item.filename}: {exc}") from exc
        logger.info("Saved upload %s (%d bytes)", path, len(item.data))
        saved.append(path.name)
    return saved
